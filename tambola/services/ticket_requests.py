"""Ticket requests: players ask, the admin approves (a ticket is generated) or rejects."""
import time

from flask import current_app

from tambola import db
from tambola.errors import (
    AlreadyExists,
    AlreadyProcessed,
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    RaiseAfterCommit,
    ResourceExhausted,
)
from tambola.models import (
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    Ticket,
    TicketRequest,
)
from tambola.services.rooms import get_room, require_admin, require_caller
from tambola.services.tickets import generate_ticket
from tambola.services.transactions import lock_room, touch, transactional

REQUESTABLE_STATUSES = ('idle', 'running', 'paused')


def _owned_tickets(room_id, user_id) -> int:
    return Ticket.query.filter_by(room_id=room_id, user_id=user_id).count()


@transactional
def request_ticket(caller_id, room_code, player_name=None) -> TicketRequest:
    require_caller(caller_id)
    room = lock_room(room_code)
    presence = room.player(caller_id)
    if presence is None:
        raise NotFound("Player not found in the room. Join the room first.")
    if room.status not in REQUESTABLE_STATUSES:
        raise FailedPrecondition(f"Game status ({room.status}) does not allow ticket requests.")

    owned = _owned_tickets(room.id, caller_id)
    if owned >= room.max_tickets_per_player:
        raise ResourceExhausted(
            f"You have reached the maximum of {room.max_tickets_per_player} tickets for this room."
        )
    pending = TicketRequest.query.filter_by(room_id=room.id, user_id=caller_id, status=REQUEST_PENDING).first()
    if pending:
        raise AlreadyExists("You already have a pending ticket request. Please wait for admin approval.")

    name = (player_name or '').strip() or presence.display_name
    ticket_request = TicketRequest(room_id=room.id, user_id=caller_id, player_name=name[:64],
                                   status=REQUEST_PENDING, requested_at=time.time())
    db.session.add(ticket_request)
    touch(room)
    current_app.logger.info(f"[ticket-request] room={room.room_code} user={caller_id} request={ticket_request.id}")
    return ticket_request


def _load_request(room, request_id) -> TicketRequest:
    ticket_request = db.session.get(TicketRequest, request_id) if request_id else None
    if not ticket_request or ticket_request.room_id != room.id:
        raise NotFound(f"Ticket request {request_id} not found.")
    if ticket_request.status != REQUEST_PENDING:
        raise AlreadyProcessed(f"Ticket request is already {ticket_request.status}.")
    return ticket_request


@transactional
def approve_ticket_request(caller_id, room_code, request_id) -> Ticket:
    room = lock_room(room_code)
    require_admin(room, caller_id, 'approve ticket requests')
    ticket_request = _load_request(room, request_id)
    if room.status not in REQUESTABLE_STATUSES:
        raise FailedPrecondition(f"Cannot issue tickets while the game is {room.status}.")

    now = time.time()
    presence = room.player(ticket_request.user_id)
    if presence is None:
        raise NotFound("Requesting player is no longer in the room.")
    if _owned_tickets(room.id, ticket_request.user_id) >= room.max_tickets_per_player:
        ticket_request.status = REQUEST_REJECTED
        ticket_request.reason = f"Player reached max tickets ({room.max_tickets_per_player}) limit."
        ticket_request.reviewed_by = caller_id
        ticket_request.reviewed_at = now
        touch(room)
        raise RaiseAfterCommit(ResourceExhausted(
            f"Player {ticket_request.player_name} has reached the maximum ticket limit."
        ))

    ticket = Ticket(
        room_id=room.id,
        user_id=ticket_request.user_id,
        player_name=ticket_request.player_name,
        numbers=generate_ticket(),
        marked_json='[]',
        created_at=now,
    )
    db.session.add(ticket)

    ticket_request.status = REQUEST_APPROVED
    ticket_request.ticket_id = ticket.id
    ticket_request.reviewed_by = caller_id
    ticket_request.reviewed_at = now
    presence.ticket_count = (presence.ticket_count or 0) + 1
    presence.last_seen = now
    room.total_money_collected = (room.total_money_collected or 0) + (room.ticket_price or 0)
    touch(room)

    current_app.logger.info(
        f"[ticket-approved] room={room.room_code} request={ticket_request.id} ticket={ticket.id} "
        f"user={ticket_request.user_id} pool={room.total_money_collected}"
    )
    return ticket


@transactional
def reject_ticket_request(caller_id, room_code, request_id, reason=None) -> TicketRequest:
    room = lock_room(room_code)
    require_admin(room, caller_id, 'reject ticket requests')
    ticket_request = _load_request(room, request_id)
    ticket_request.status = REQUEST_REJECTED
    ticket_request.reason = (reason or '').strip()[:256] or "Rejected by admin."
    ticket_request.reviewed_by = caller_id
    ticket_request.reviewed_at = time.time()
    touch(room)
    current_app.logger.info(f"[ticket-rejected] room={room.room_code} request={ticket_request.id} reason={ticket_request.reason}")
    return ticket_request


def list_ticket_requests(caller_id, room_code, status=REQUEST_PENDING) -> list:
    room = get_room(room_code)
    require_admin(room, caller_id, 'view ticket requests')
    query = TicketRequest.query.filter_by(room_id=room.id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(TicketRequest.requested_at).all()


def list_tickets(caller_id, room_code) -> list:
    require_caller(caller_id)
    room = get_room(room_code)
    return Ticket.query.filter_by(room_id=room.id, user_id=caller_id).order_by(Ticket.created_at).all()


def update_marked_numbers(caller_id, room_code, ticket_id, marked) -> Ticket:
    """Store the owner's marks. Informational only; claims never trust them."""
    require_caller(caller_id)
    room = get_room(room_code)
    ticket = db.session.get(Ticket, ticket_id) if ticket_id else None
    if not ticket or ticket.room_id != room.id:
        raise NotFound(f"Ticket {ticket_id} not found.")
    if ticket.user_id != caller_id:
        raise PermissionDenied("This ticket does not belong to you.")
    if not isinstance(marked, list) or any(isinstance(n, bool) or not isinstance(n, int) for n in marked):
        raise InvalidArgument("Marked numbers must be a list of whole numbers.")
    on_ticket = {n for row in ticket.numbers for n in row if n is not None}
    stray = sorted(set(marked) - on_ticket)
    if stray:
        raise InvalidArgument(f"Numbers not on this ticket: {stray}.")
    ticket.marked = marked
    db.session.commit()
    return ticket
