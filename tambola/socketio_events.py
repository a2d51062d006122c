from flask_socketio import join_room, leave_room, emit
from flask import current_app, request
from flask_login import current_user
from tambola import socketio
from typing import Dict, Optional, Set, Tuple
import threading


NAMESPACE = '/ws'


def room_channel(room_code: str) -> str:
    return f"room:{room_code.upper()}"


def emit_room_event(room_code: str, event: str, payload: dict) -> None:
    """Broadcast to everyone subscribed to the room. Safe from background tasks."""
    socketio.emit(event, payload, to=room_channel(room_code), namespace=NAMESPACE)


class ConnectionRegistry:
    """Which socket belongs to which (room, user).

    A player may hold several sockets (tabs); presence goes offline only when
    the last one for that room closes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_sid: Dict[str, Tuple[str, int]] = {}
        self._by_member: Dict[Tuple[str, int], Set[str]] = {}

    def add(self, sid: str, room_code: str, user_id: int) -> None:
        with self._lock:
            self._discard(sid)
            key = (room_code, user_id)
            self._by_sid[sid] = key
            self._by_member.setdefault(key, set()).add(sid)

    def remove(self, sid: str) -> Optional[Tuple[str, int, bool]]:
        """Forget ``sid``; returns (room_code, user_id, last_socket) or None."""
        with self._lock:
            key = self._discard(sid)
            if key is None:
                return None
            return key[0], key[1], key not in self._by_member

    def lookup(self, sid: str) -> Optional[Tuple[str, int]]:
        with self._lock:
            return self._by_sid.get(sid)

    def _discard(self, sid):
        key = self._by_sid.pop(sid, None)
        if key is None:
            return None
        sids = self._by_member.get(key)
        if sids is not None:
            sids.discard(sid)
            if not sids:
                del self._by_member[key]
        return key


def _registry() -> ConnectionRegistry:
    return current_app.extensions['tambola_connections']


def _get_sid() -> str:
    return request.sid  # type: ignore[attr-defined]


def _room_code(data) -> Optional[str]:
    code = (data or {}).get('room_code')
    if not code or not isinstance(code, str):
        emit('error', {'message': 'room_code is required'})
        return None
    return code.strip().upper()


def handle_connect():
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def handle_disconnect(*args):
    from tambola.services.rooms import touch_presence

    gone = _registry().remove(_get_sid())
    if not gone:
        return
    room_code, user_id, last_socket = gone
    if last_socket and touch_presence(user_id, room_code, online=False):
        current_app.logger.info(f"[presence-offline] room={room_code} user={user_id}")
        emit_room_event(room_code, 'state_update', {'room_code': room_code})


def handle_join_room(data):
    from tambola.errors import TambolaError
    from tambola.services.rooms import get_room, room_state, touch_presence

    room_code = _room_code(data)
    if not room_code:
        return
    if not current_user.is_authenticated:
        emit('error', {'message': 'You must be logged in.', 'code': 'unauthenticated'})
        return
    try:
        room = get_room(room_code)
    except TambolaError as exc:
        emit('error', {'message': exc.message, 'code': exc.kind})
        return

    join_room(room_channel(room_code))
    _registry().add(_get_sid(), room_code, current_user.id)
    touch_presence(current_user.id, room_code, online=True)
    emit('joined', {'room': room_channel(room_code)})
    emit('state_update', room_state(room, current_user.id))


def handle_leave_room(data):
    from tambola.services.rooms import touch_presence

    room_code = _room_code(data)
    if not room_code:
        return
    leave_room(room_channel(room_code))
    gone = _registry().remove(_get_sid())
    if gone and gone[2]:
        touch_presence(gone[1], room_code, online=False)
    emit('left', {'room': room_channel(room_code)})


def handle_heartbeat(data):
    from tambola.services.rooms import touch_presence

    member = _registry().lookup(_get_sid())
    if not member:
        emit('error', {'message': 'Join a room before sending heartbeats'})
        return
    ok = touch_presence(member[1], member[0], online=True)
    emit('heartbeat_ack', {'room_code': member[0], 'ok': ok})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(app, testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    app.extensions['tambola_connections'] = ConnectionRegistry()

    namespaces = [NAMESPACE, '/'] if testing else [NAMESPACE]
    for ns in namespaces:
        socketio.on_event('connect', handle_connect, namespace=ns)
        socketio.on_event('disconnect', handle_disconnect, namespace=ns)
        socketio.on_event('join_room', handle_join_room, namespace=ns)
        socketio.on_event('leave_room', handle_leave_room, namespace=ns)
        socketio.on_event('heartbeat', handle_heartbeat, namespace=ns)
        socketio.on_event('ping', handle_ping, namespace=ns)
