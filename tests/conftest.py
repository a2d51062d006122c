import os
import sys
import pytest
from flask import g

# Ensure the project root (containing the `tambola` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tambola import create_app, db, socketio


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    DEFAULT_TICKET_PRICE = 10.0
    DEFAULT_MAX_TICKETS_PER_PLAYER = 6
    ROOM_CODE_LENGTH = 6
    DEFAULT_AUTO_CALL_INTERVAL_SEC = 5
    MIN_AUTO_CALL_INTERVAL_SEC = 3
    MAX_AUTO_CALL_INTERVAL_SEC = 60
    AUTO_CALL_TICK_SEC = 1.0
    TRANSACTION_MAX_ATTEMPTS = 5
    TICKET_GENERATION_ATTEMPTS = 10


# A valid ticket with a known layout; corners are 2, 78, 7 and 79
KNOWN_GRID = [
    [2, 13, None, 35, None, 56, None, 78, None],
    [None, 15, 24, None, 41, None, 63, None, 85],
    [7, None, 28, 39, None, 58, None, 79, None],
]

DEFAULT_RULES = [
    {'id': 'early5', 'name': 'Early Five', 'coins_per_prize': 50},
    {'id': 'topline', 'name': 'Top Line', 'percentage_of_pool': 10},
    {'id': 'corners', 'name': 'Four Corners', 'coins_per_prize': 30, 'max_prizes': 2},
    {'id': 'fullhouse', 'name': 'Full House', 'percentage_of_pool': 40},
]


def forget_login():
    # Requests reuse the fixture's app context, and with it ``g``
    g.pop('_login_user', None)


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    application.before_request(forget_login)
    with application.app_context():
        # Ensure models are imported so tables are created
        import tambola.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


def make_user(username, password='password'):
    from tambola.models import User
    user = User(username=username)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user.id


@pytest.fixture()
def users(flask_app):
    """User ids keyed by username."""
    return {name: make_user(name) for name in ('admin', 'alice', 'bob')}


def login(test_client, username, password='password'):
    res = test_client.post('/login', json={'username': username, 'password': password})
    assert res.status_code == 200, res.get_json()
    return test_client


@pytest.fixture()
def admin_client(flask_app, users):
    return login(flask_app.test_client(), 'admin')


@pytest.fixture()
def alice_client(flask_app, users):
    return login(flask_app.test_client(), 'alice')


@pytest.fixture()
def room_code(flask_app, users):
    """An idle room run by admin, with alice and bob joined."""
    from tambola.services import rooms
    room = rooms.create_room(users['admin'], 'Host', name='Friday Night', rules=DEFAULT_RULES)
    code = room.room_code
    rooms.join_room(users['alice'], code, 'Alice')
    rooms.join_room(users['bob'], code, 'Bob')
    return code


@pytest.fixture()
def running_room(room_code, users):
    from tambola.services import rooms
    rooms.set_lifecycle(users['admin'], room_code, 'start')
    return room_code


def give_ticket(room_code, user_id, grid=None):
    """Insert a ticket directly, bypassing the request workflow."""
    from tambola.models import Room, Ticket
    room = Room.query.filter_by(room_code=room_code).first()
    presence = room.player(user_id)
    ticket = Ticket(
        room_id=room.id,
        user_id=user_id,
        player_name=presence.display_name,
        numbers=grid or KNOWN_GRID,
        marked_json='[]',
    )
    db.session.add(ticket)
    db.session.commit()
    return ticket.id


def call_numbers(room_code, admin_id, numbers):
    from tambola.services.numbers import call_next
    for n in numbers:
        call_next(admin_id, room_code, manual_number=n)


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')
