from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from tambola.errors import TambolaError, Unauthenticated

    @flask_app.errorhandler(TambolaError)
    def handle_game_error(exc):
        if exc.status_code >= 500:
            flask_app.logger.error(f"[error] kind={exc.kind} message={exc.message}")
        return jsonify(exc.to_dict()), exc.status_code

    from tambola.main import main
    flask_app.register_blueprint(main)

    from tambola.api.rooms import rooms
    flask_app.register_blueprint(rooms, url_prefix='/api/rooms')

    # Handlers bind to the module-level socketio instance
    from tambola.socketio_events import register_socketio_handlers
    register_socketio_handlers(flask_app, testing=flask_app.config.get('TESTING', False))

    from tambola.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        exc = Unauthenticated("You must be logged in.")
        return jsonify(exc.to_dict()), exc.status_code

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            # Seed users
            users = ['admin', 'player1', 'player2', 'player3']
            for u in users:
                user = User(username=u)
                user.set_password('password')
                db.session.add(user)

            db.session.commit()
            click.echo('Database has been reset and seeded!')

    @click.command('autocall-tick')
    def autocall_tick_command():
        """Runs one pass of the auto-call driver over all rooms."""
        from tambola.services.scheduler import run_auto_call_tick
        with flask_app.app_context():
            called = run_auto_call_tick()
            click.echo(f'Auto-call tick called numbers in {called} room(s).')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(autocall_tick_command)

    return flask_app
