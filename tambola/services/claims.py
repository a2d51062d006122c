"""Prize claims: server-side validation, admin adjudication and payouts.

A claim is checked by the pattern engine the moment it is submitted. Claims
that fail are stored as ``rejected_auto_invalid`` for the audit trail and
never reach the admin queue; the rest wait for the admin to approve or
reject them.
"""
import math
import time

from flask import current_app

from tambola import db
from tambola.errors import (
    AlreadyExists,
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    RaiseAfterCommit,
    ResourceExhausted,
    UnknownRule,
)
from tambola.models import (
    CLAIM_ADMIN_REJECTED,
    CLAIM_APPROVED,
    CLAIM_AUTO_REJECTED,
    CLAIM_PENDING,
    PrizeClaim,
    Ticket,
    Winner,
)
from tambola.services import prize_rules
from tambola.services.rooms import get_room, require_admin, require_caller
from tambola.services.transactions import lock_room, touch, transactional

CLAIMABLE_STATUSES = ('running', 'paused')
OPEN_CLAIM_STATUSES = (CLAIM_PENDING, CLAIM_APPROVED)


def compute_payout(total_money_collected, rule) -> int:
    """Whole coins for one prize of ``rule``.

    A pool percentage wins when set and the pool is non-empty; otherwise the
    flat ``coins_per_prize`` is paid.
    """
    pool = total_money_collected or 0
    if rule.percentage_of_pool and pool > 0:
        return int(math.floor(pool * rule.percentage_of_pool / 100))
    return int(math.floor(rule.coins_per_prize or 0))


def _claimed_list(claimed_numbers):
    if not isinstance(claimed_numbers, list) or any(
        isinstance(n, bool) or not isinstance(n, int) for n in claimed_numbers
    ):
        raise InvalidArgument("Claimed numbers must be a list of whole numbers.")
    return claimed_numbers


def _rule_full(rule) -> bool:
    return len(rule.claims) >= rule.max_prizes


@transactional
def submit_claim(caller_id, room_code, ticket_id, rule_id, claimed_numbers) -> PrizeClaim:
    require_caller(caller_id)
    claimed = _claimed_list(claimed_numbers)
    room = lock_room(room_code)
    ticket = db.session.get(Ticket, ticket_id) if ticket_id else None
    if ticket is None:
        raise NotFound(f"Ticket {ticket_id} not found.")
    if ticket.user_id != caller_id:
        raise PermissionDenied("This ticket does not belong to you.")
    if ticket.room_id != room.id:
        raise InvalidArgument("Ticket does not belong to this room.")
    if room.status not in CLAIMABLE_STATUSES:
        raise FailedPrecondition(f"Prizes can only be claimed during a game (status: {room.status}).")

    rule = room.rule(rule_id)
    if rule is None:
        raise NotFound(f"Prize rule {rule_id} not found in this room.")
    if not rule.is_active:
        raise FailedPrecondition(f"Prize '{rule.name}' is not active.")
    if _rule_full(rule):
        raise ResourceExhausted(f"All {rule.max_prizes} prize(s) for '{rule.name}' have been claimed.")

    existing = PrizeClaim.query.filter(
        PrizeClaim.room_id == room.id,
        PrizeClaim.user_id == caller_id,
        PrizeClaim.ticket_id == ticket.id,
        PrizeClaim.prize_rule_id == rule.rule_id,
        PrizeClaim.game_number == room.game_number,
        PrizeClaim.status.in_(OPEN_CLAIM_STATUSES),
    ).first()
    if existing:
        raise AlreadyExists(f"You already have a {existing.status} claim for '{rule.name}' on this ticket.")

    try:
        result = prize_rules.evaluate(ticket.numbers, claimed, room.called_numbers, rule)
        valid, effective, reason = result.valid, result.effectively_claimed, result.reason
    except UnknownRule as exc:
        valid, effective, reason = False, [], exc.message

    presence = room.player(caller_id)
    claim = PrizeClaim(
        room_id=room.id,
        ticket_id=ticket.id,
        user_id=caller_id,
        player_name=presence.display_name if presence else ticket.player_name,
        prize_rule_id=rule.rule_id,
        prize_name=rule.name,
        game_number=room.game_number,
        claimed_numbers=claimed,
        effectively_claimed_numbers=effective,
        status=CLAIM_PENDING if valid else CLAIM_AUTO_REJECTED,
        server_validation_result=valid,
        reason=None if valid else reason,
        claimed_at=time.time(),
    )
    db.session.add(claim)
    touch(room)
    current_app.logger.info(
        f"[claim-submitted] room={room.room_code} claim={claim.id} rule={rule.rule_id} "
        f"user={caller_id} valid={valid} reason={reason}"
    )
    return claim


def _load_claim(room, claim_id) -> PrizeClaim:
    claim = db.session.get(PrizeClaim, claim_id) if claim_id else None
    if claim is None or claim.room_id != room.id:
        raise NotFound(f"Claim {claim_id} not found.")
    return claim


def _reject_after_commit(claim, caller_id, reason, now):
    claim.status = CLAIM_ADMIN_REJECTED
    claim.reason = reason
    claim.reviewed_by = caller_id
    claim.reviewed_at = now
    raise RaiseAfterCommit(FailedPrecondition(reason))


@transactional
def approve_claim(caller_id, room_code, claim_id) -> PrizeClaim:
    room = lock_room(room_code)
    require_admin(room, caller_id, 'approve prize claims')
    claim = _load_claim(room, claim_id)
    if claim.status != CLAIM_PENDING:
        raise FailedPrecondition(f"Claim is {claim.status}, not pending approval.")
    if room.status not in CLAIMABLE_STATUSES:
        raise FailedPrecondition(f"Claims can only be approved during a game (status: {room.status}).")

    now = time.time()
    if claim.game_number != room.game_number:
        touch(room)
        _reject_after_commit(claim, caller_id, "Claim belongs to an earlier game.", now)
    uncalled = sorted(set(claim.effectively_claimed_numbers) - set(room.called_numbers))
    if uncalled:
        touch(room)
        _reject_after_commit(claim, caller_id, f"Numbers not called in this game: {uncalled}.", now)
    rule = room.rule(claim.prize_rule_id)
    if rule is None:
        touch(room)
        _reject_after_commit(claim, caller_id, f"Prize rule {claim.prize_rule_id} no longer exists.", now)
    if _rule_full(rule):
        touch(room)
        _reject_after_commit(claim, caller_id, f"Maximum prizes for '{rule.name}' already awarded.", now)
    already_won = Winner.query.filter_by(
        room_id=room.id, user_id=claim.user_id, ticket_id=claim.ticket_id, prize_rule_id=rule.rule_id
    ).first()
    if already_won:
        touch(room)
        _reject_after_commit(claim, caller_id, f"Player already won '{rule.name}' with this ticket.", now)

    coins = compute_payout(room.total_money_collected, rule)
    claim.status = CLAIM_APPROVED
    claim.coins_awarded = coins
    claim.reviewed_by = caller_id
    claim.reviewed_at = now
    claim.reason = None

    room.winners.append(Winner(
        claim_id=claim.id,
        user_id=claim.user_id,
        player_name=claim.player_name,
        ticket_id=claim.ticket_id,
        prize_rule_id=rule.rule_id,
        prize_name=rule.name,
        coins_awarded=coins,
        awarded_at=now,
    ))
    entries = rule.claims
    entries.append({
        'claimId': claim.id,
        'userId': claim.user_id,
        'playerName': claim.player_name,
        'ticketId': claim.ticket_id,
        'coinsAwarded': coins,
        'timestamp': now,
    })
    rule.claims = entries
    touch(room)

    current_app.logger.info(
        f"[claim-approved] room={room.room_code} claim={claim.id} rule={rule.rule_id} "
        f"user={claim.user_id} coins={coins} awarded={len(entries)}/{rule.max_prizes}"
    )
    return claim


@transactional
def reject_claim(caller_id, room_code, claim_id, reason) -> PrizeClaim:
    room = lock_room(room_code)
    require_admin(room, caller_id, 'reject prize claims')
    if not isinstance(reason, str) or not reason.strip():
        raise InvalidArgument("A rejection reason is required.")
    claim = _load_claim(room, claim_id)
    if claim.status in (CLAIM_APPROVED, CLAIM_ADMIN_REJECTED):
        raise FailedPrecondition(f"Claim is already {claim.status}.")
    claim.status = CLAIM_ADMIN_REJECTED
    claim.reason = reason.strip()[:256]
    claim.reviewed_by = caller_id
    claim.reviewed_at = time.time()
    touch(room)
    current_app.logger.info(f"[claim-rejected] room={room.room_code} claim={claim.id} reason={claim.reason}")
    return claim


def list_claims(caller_id, room_code) -> list:
    require_caller(caller_id)
    room = get_room(room_code)
    query = PrizeClaim.query.filter_by(room_id=room.id)
    if room.admin_id == caller_id:
        query = query.filter_by(status=CLAIM_PENDING)
    else:
        query = query.filter_by(user_id=caller_id)
    return query.order_by(PrizeClaim.claimed_at).all()
