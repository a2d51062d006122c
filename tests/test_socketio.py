from tambola import socketio
from tambola.models import Room
from tambola.services import rooms
from tambola.services.scheduler import run_auto_call_tick
from tambola.socketio_events import ConnectionRegistry

from conftest import forget_login


def _names(packets):
    return [p['name'] for p in packets]


def test_socket_connect_and_ping(sio_client):
    # Ensure we are connected to /ws
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')
    assert 'connected' in _names(sio_client.get_received('/ws'))

    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert received[-1]['name'] == 'pong'
    assert received[-1]['args'][0] == {'n': 1}


def test_join_room_requires_login(sio_client, room_code):
    sio_client.get_received('/ws')  # flush
    sio_client.emit('join_room', {'room_code': room_code}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert received[-1]['name'] == 'error'
    assert received[-1]['args'][0]['code'] == 'unauthenticated'

    sio_client.emit('join_room', {}, namespace='/ws')
    assert sio_client.get_received('/ws')[-1]['name'] == 'error'


def test_member_gets_state_broadcasts_and_goes_offline(flask_app, room_code, users, alice_client):
    rooms.set_lifecycle(users['admin'], room_code, 'start')
    rooms.set_calling_mode(users['admin'], room_code, 'auto', 5)

    forget_login()
    alice_socket = socketio.test_client(flask_app, flask_test_client=alice_client, namespace='/ws')
    alice_socket.get_received('/ws')  # flush

    alice_socket.emit('join_room', {'room_code': room_code.lower()}, namespace='/ws')
    received = alice_socket.get_received('/ws')
    assert _names(received) == ['joined', 'state_update']
    state = received[1]['args'][0]
    assert state['room_code'] == room_code
    assert state['is_admin'] is False

    assert run_auto_call_tick() == 1
    received = alice_socket.get_received('/ws')
    called = [p['args'][0] for p in received if p['name'] == 'number_called']
    assert len(called) == 1
    assert called[0]['room_code'] == room_code
    assert 1 <= called[0]['called_number'] <= 90

    alice_socket.emit('heartbeat', {}, namespace='/ws')
    ack = alice_socket.get_received('/ws')[-1]
    assert ack['name'] == 'heartbeat_ack'
    assert ack['args'][0]['ok'] is True

    alice_socket.disconnect(namespace='/ws')
    presence = Room.query.filter_by(room_code=room_code).first().player(users['alice'])
    assert presence.online is False


def test_heartbeat_before_join_is_an_error(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('heartbeat', {}, namespace='/ws')
    assert sio_client.get_received('/ws')[-1]['name'] == 'error'


def test_registry_tracks_last_socket_per_member():
    registry = ConnectionRegistry()
    registry.add('sid-1', 'ABC123', 7)
    registry.add('sid-2', 'ABC123', 7)
    assert registry.lookup('sid-1') == ('ABC123', 7)

    assert registry.remove('sid-1') == ('ABC123', 7, False)
    assert registry.remove('sid-2') == ('ABC123', 7, True)
    assert registry.remove('sid-2') is None

    # Re-adding a sid under another room moves it
    registry.add('sid-3', 'ABC123', 7)
    registry.add('sid-3', 'XYZ789', 7)
    assert registry.remove('sid-3') == ('XYZ789', 7, True)
