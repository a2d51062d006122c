from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from tambola.errors import InvalidArgument
from tambola.services import claims as claim_svc
from tambola.services import numbers as number_svc
from tambola.services import rooms as room_svc
from tambola.services import ticket_requests as request_svc
from tambola.socketio_events import emit_room_event


rooms = Blueprint('rooms', __name__)


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidArgument('Request body must be a JSON object.')
    return data


def _state_changed(room_code: str) -> None:
    emit_room_event(room_code, 'state_update', {'room_code': room_code.upper()})


@rooms.route('/create', methods=['POST'])
@login_required
def create_room():
    data = _body()
    room = room_svc.create_room(
        current_user.id,
        data.get('admin_display_name') or current_user.username,
        name=data.get('name'),
        rules=data.get('rules'),
        ticket_price=data.get('ticket_price'),
        max_tickets_per_player=data.get('max_tickets_per_player'),
        auto_call_interval=data.get('auto_call_interval'),
    )
    return jsonify({
        'message': 'Room created!',
        'room_code': room.room_code,
        'room': room_svc.room_state(room, current_user.id),
    }), 201


@rooms.route('/<room_code>/config', methods=['PATCH'])
@login_required
def update_config(room_code):
    data = _body()
    changes = {k: data[k] for k in room_svc.CONFIGURABLE_FIELDS if k in data}
    extra = set(data) - set(room_svc.CONFIGURABLE_FIELDS)
    if extra:
        raise InvalidArgument(f"Unknown configuration fields: {', '.join(sorted(extra))}.")
    room = room_svc.update_room_config(current_user.id, room_code, **changes)
    _state_changed(room.room_code)
    return jsonify(room_svc.room_state(room, current_user.id))


@rooms.route('/<room_code>/lifecycle', methods=['POST'])
@login_required
def lifecycle(room_code):
    action = _body().get('action')
    if not isinstance(action, str):
        raise InvalidArgument('action is required.')
    result = room_svc.set_lifecycle(current_user.id, room_code, action.strip().lower())
    _state_changed(room_code)
    return jsonify({'success': True, **result})


@rooms.route('/<room_code>/calling-mode', methods=['POST'])
@login_required
def calling_mode(room_code):
    data = _body()
    room = room_svc.set_calling_mode(current_user.id, room_code, data.get('mode'), data.get('interval'))
    _state_changed(room.room_code)
    return jsonify({
        'success': True,
        'calling_mode': room.calling_mode,
        'auto_call_interval': room.auto_call_interval,
    })


@rooms.route('/<room_code>/numbers', methods=['POST'])
@login_required
def call_number(room_code):
    data = _body()
    result = number_svc.call_next(current_user.id, room_code, manual_number=data.get('number'))
    emit_room_event(result.room_code, 'number_called', result.to_dict())
    _state_changed(result.room_code)
    return jsonify({'success': True, **result.to_dict()}), 201


@rooms.route('/<room_code>/join', methods=['POST'])
@login_required
def join(room_code):
    data = _body()
    presence = room_svc.join_room(current_user.id, room_code, data.get('name') or current_user.username)
    _state_changed(room_code)
    return jsonify(presence.to_dict()), 201


@rooms.route('/<room_code>/presence', methods=['POST'])
@login_required
def heartbeat(room_code):
    ok = room_svc.touch_presence(current_user.id, room_code, online=True)
    return jsonify({'success': ok})


@rooms.route('/<room_code>/state', methods=['GET'])
@login_required
def state(room_code):
    room = room_svc.get_room(room_code)
    return jsonify(room_svc.room_state(room, current_user.id))


@rooms.route('/<room_code>/ticket-requests', methods=['POST'])
@login_required
def request_ticket(room_code):
    ticket_request = request_svc.request_ticket(current_user.id, room_code, _body().get('player_name'))
    _state_changed(room_code)
    emit_room_event(room_code, 'ticket_request_updated', ticket_request.to_dict())
    return jsonify(ticket_request.to_dict()), 201


@rooms.route('/<room_code>/ticket-requests', methods=['GET'])
@login_required
def list_ticket_requests(room_code):
    status = request.args.get('status', request_svc.REQUEST_PENDING)
    if status == 'all':
        status = None
    items = request_svc.list_ticket_requests(current_user.id, room_code, status=status)
    return jsonify([r.to_dict() for r in items])


@rooms.route('/<room_code>/ticket-requests/<request_id>/approve', methods=['POST'])
@login_required
def approve_ticket_request(room_code, request_id):
    ticket = request_svc.approve_ticket_request(current_user.id, room_code, request_id)
    emit_room_event(room_code, 'ticket_request_updated', {'request_id': request_id, 'status': 'approved',
                                                         'ticket_id': ticket.id})
    _state_changed(room_code)
    return jsonify({'success': True, 'request_id': request_id, 'ticket': ticket.to_dict()})


@rooms.route('/<room_code>/ticket-requests/<request_id>/reject', methods=['POST'])
@login_required
def reject_ticket_request(room_code, request_id):
    ticket_request = request_svc.reject_ticket_request(current_user.id, room_code, request_id,
                                                       _body().get('reason'))
    emit_room_event(room_code, 'ticket_request_updated', ticket_request.to_dict())
    return jsonify({'success': True, **ticket_request.to_dict()})


@rooms.route('/<room_code>/tickets', methods=['GET'])
@login_required
def my_tickets(room_code):
    tickets = request_svc.list_tickets(current_user.id, room_code)
    return jsonify([t.to_dict() for t in tickets])


@rooms.route('/<room_code>/tickets/<ticket_id>/marked', methods=['PUT'])
@login_required
def mark_numbers(room_code, ticket_id):
    ticket = request_svc.update_marked_numbers(current_user.id, room_code, ticket_id, _body().get('marked'))
    return jsonify(ticket.to_dict())


@rooms.route('/<room_code>/claims', methods=['POST'])
@login_required
def submit_claim(room_code):
    data = _body()
    claim = claim_svc.submit_claim(
        current_user.id,
        room_code,
        data.get('ticket_id'),
        data.get('rule_id'),
        data.get('claimed_numbers'),
    )
    emit_room_event(room_code, 'claim_updated', claim.to_dict())
    return jsonify(claim.to_dict()), 201


@rooms.route('/<room_code>/claims', methods=['GET'])
@login_required
def list_claims(room_code):
    items = claim_svc.list_claims(current_user.id, room_code)
    return jsonify([c.to_dict() for c in items])


@rooms.route('/<room_code>/claims/<claim_id>/approve', methods=['POST'])
@login_required
def approve_claim(room_code, claim_id):
    claim = claim_svc.approve_claim(current_user.id, room_code, claim_id)
    emit_room_event(room_code, 'claim_updated', claim.to_dict())
    _state_changed(room_code)
    return jsonify({'success': True, 'coins_awarded': claim.coins_awarded, 'claim': claim.to_dict()})


@rooms.route('/<room_code>/claims/<claim_id>/reject', methods=['POST'])
@login_required
def reject_claim(room_code, claim_id):
    claim = claim_svc.reject_claim(current_user.id, room_code, claim_id, _body().get('reason'))
    emit_room_event(room_code, 'claim_updated', claim.to_dict())
    return jsonify({'success': True, 'claim': claim.to_dict()})
