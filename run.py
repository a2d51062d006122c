from tambola import create_app, socketio
from tambola.services.scheduler import start_auto_caller

app = create_app()
start_auto_caller(app)

if __name__ == '__main__':
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True)
