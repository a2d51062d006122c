"""Room lifecycle: creation, configuration, presence and the game state machine.

    idle -> running -> {paused <-> running} -> stopped
    stopped -> running   (new game in the same room)

All mutations go through ``@transactional`` and re-read the room first.
"""
import math
import re
import time
from typing import Optional

from flask import current_app

from tambola import db
from tambola.errors import (
    FailedPrecondition,
    InvalidArgument,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    Unauthenticated,
    UnknownRule,
)
from tambola.models import (
    CALLING_MODES,
    CLAIM_ADMIN_REJECTED,
    CLAIM_PENDING,
    PlayerPresence,
    PrizeClaim,
    PrizeRule,
    Room,
    Winner,
    generate_room_code,
)
from tambola.services.prize_rules import canonical_pattern
from tambola.services.transactions import lock_room, touch, transactional

CONFIGURABLE_FIELDS = ('name', 'rules', 'ticket_price', 'max_tickets_per_player', 'auto_call_interval')


def require_caller(caller_id):
    if caller_id is None:
        raise Unauthenticated("User must be authenticated.")
    return caller_id


def require_admin(room: Room, caller_id, action: str) -> None:
    require_caller(caller_id)
    if room.admin_id != caller_id:
        raise PermissionDenied(f"Only the room admin can {action}.")


class RoomStateMachine:
    """Allowed lifecycle actions and the status each one leads to."""

    TRANSITIONS = {
        'start': (('idle', 'stopped'), 'running'),
        'pause': (('running',), 'paused'),
        'resume': (('paused',), 'running'),
        'stop': (('running', 'paused'), 'stopped'),
    }

    @classmethod
    def target(cls, action: str, current: str) -> str:
        if action not in cls.TRANSITIONS:
            raise InvalidArgument(f"Unknown lifecycle action '{action}'. Use one of: {', '.join(cls.TRANSITIONS)}.")
        allowed_from, to = cls.TRANSITIONS[action]
        if current not in allowed_from:
            raise InvalidTransition(action, current, allowed_from)
        return to

    @classmethod
    def apply(cls, room: Room, action: str, now: Optional[float] = None):
        """Move ``room`` through ``action``; returns the summary on stop."""
        to = cls.target(action, room.status)
        now = now if now is not None else time.time()
        summary = None

        if action == 'start':
            if not any(r.is_active for r in room.rules):
                raise FailedPrecondition("Cannot start game. Please set at least one active prize rule first.")
            reset_game(room, now)
            room.game_number = (room.game_number or 0) + 1
            room.game_start_time = now
        elif action == 'pause':
            room.calling_mode = 'manual'
        elif action == 'stop':
            room.game_end_time = now
            summary = build_summary(room, now)
            room.game_summary = summary
            room.calling_mode = 'manual'

        room.status = to
        touch(room)
        return summary


def reset_game(room: Room, now: Optional[float] = None) -> None:
    """Clear the previous game. Claims still pending from it are closed."""
    now = now if now is not None else time.time()
    stale = PrizeClaim.query.filter_by(room_id=room.id, status=CLAIM_PENDING).all()
    for claim in stale:
        claim.status = CLAIM_ADMIN_REJECTED
        claim.reason = 'Game restarted.'
        claim.reviewed_by = room.admin_id
        claim.reviewed_at = now
    if stale:
        current_app.logger.info(f"[claims-closed] room={room.room_code} count={len(stale)} reason=restart")
    room.called_numbers = []
    room.latest_called_number = None
    room.latest_called_phrase = None
    room.last_number_call_at = None
    room.game_end_time = None
    room.game_summary = None
    for rule in room.rules:
        rule.claims = []
    Winner.query.filter_by(room_id=room.id).delete(synchronize_session=False)
    db.session.expire(room, ['winners'])


def build_summary(room: Room, now: float) -> dict:
    started = room.game_start_time or now
    return {
        'total_numbers_called': len(room.called_numbers),
        'winners': [w.to_dict() for w in room.winners],
        'player_count': sum(1 for p in room.players if not p.is_admin),
        'players': {str(p.user_id): p.to_dict() for p in room.players},
        'rules': [r.to_dict() for r in room.rules],
        'total_money_collected': room.total_money_collected,
        'game_start_time': room.game_start_time,
        'game_end_time': now,
        'elapsed_seconds': max(0, int(now - started)),
    }


# ---- Rule configuration ----

def _slug(name: str) -> str:
    return re.sub(r'\s+', '', name).lower()


def parse_rules_string(rules_string: str) -> list:
    """Parse ``"Early Five:10,Top Line:15"`` into rule dicts (percentage of pool)."""
    rules = []
    for index, part in enumerate(p for p in rules_string.split(',') if p.strip()):
        pieces = part.split(':')
        if len(pieces) != 2 or not pieces[0].strip():
            raise InvalidArgument(f"Invalid rule '{part.strip()}'. Expected 'Name:Percentage'.")
        name = pieces[0].strip()
        try:
            percentage = float(pieces[1])
        except ValueError:
            raise InvalidArgument(f"Invalid percentage for rule '{name}'.")
        rules.append({
            'id': f"rule_{_slug(name)}_{index}",
            'name': name,
            'pattern': _slug(name),
            'percentage_of_pool': percentage,
        })
    return rules


def _number(value, field_name, rule_name, cast=float):
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Rule '{rule_name}': {field_name} must be a number.")
    if isinstance(number, float) and not math.isfinite(number):
        raise InvalidArgument(f"Rule '{rule_name}': {field_name} must be finite.")
    return number


def normalize_rules(raw) -> list:
    """Validate admin-supplied rules and return clean dicts in order."""
    if isinstance(raw, str):
        raw = parse_rules_string(raw)
    if not isinstance(raw, list):
        raise InvalidArgument("Rules must be a list or a 'Name:Percentage,...' string.")

    rules, seen = [], set()
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise InvalidArgument(f"Rule at position {index} must be an object.")
        name = str(item.get('name') or '').strip()
        if not name:
            raise InvalidArgument(f"Rule at position {index} needs a name.")
        rule_id = str(item.get('id') or item.get('rule_id') or f"rule_{_slug(name)}_{index}").strip()
        if rule_id in seen:
            raise InvalidArgument(f"Duplicate rule id '{rule_id}'.")
        seen.add(rule_id)

        coins = _number(item.get('coins_per_prize') or 0, 'coins_per_prize', name)
        if coins < 0:
            raise InvalidArgument(f"Rule '{name}': coins_per_prize cannot be negative.")
        percentage = item.get('percentage_of_pool')
        if percentage is not None:
            percentage = _number(percentage, 'percentage_of_pool', name)
            if percentage <= 0 or percentage > 100:
                raise InvalidArgument(f"Rule '{name}': percentage_of_pool must be > 0 and <= 100.")
        max_prizes = _number(item.get('max_prizes', 1), 'max_prizes', name, cast=int)
        if max_prizes < 1:
            raise InvalidArgument(f"Rule '{name}': max_prizes must be at least 1.")
        pattern = item.get('pattern') or None
        try:
            canonical_pattern(pattern or rule_id)
        except UnknownRule:
            raise InvalidArgument(f"Rule '{name}': '{pattern or rule_id}' is not a known prize pattern.")

        rules.append({
            'rule_id': rule_id,
            'pattern': pattern,
            'name': name,
            'description': str(item.get('description') or ''),
            'is_active': bool(item.get('is_active', True)),
            'coins_per_prize': coins,
            'percentage_of_pool': percentage,
            'max_prizes': max_prizes,
        })

    total = sum(r['percentage_of_pool'] or 0 for r in rules if r['is_active'])
    if total > 100:
        raise InvalidArgument(f"Total prize percentage ({total:g}%) cannot exceed 100%.")
    return rules


def _replace_rules(room: Room, rules: list) -> None:
    room.rules = [PrizeRule(position=i, claims_json='[]', **r) for i, r in enumerate(rules)]


def _validate_interval(interval) -> int:
    cfg = current_app.config
    low = int(cfg.get('MIN_AUTO_CALL_INTERVAL_SEC', 3))
    high = int(cfg.get('MAX_AUTO_CALL_INTERVAL_SEC', 60))
    if isinstance(interval, bool):
        interval = None
    try:
        value = int(interval)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Auto-call interval must be a number between {low} and {high} seconds.")
    if value < low or value > high:
        raise InvalidArgument(f"Auto-call interval must be a number between {low} and {high} seconds.")
    return value


def _validate_price(price) -> float:
    value = _number(price, 'ticket_price', 'room')
    if value < 0:
        raise InvalidArgument("Ticket price cannot be negative.")
    return value


def _validate_max_tickets(value) -> int:
    count = _number(value, 'max_tickets_per_player', 'room', cast=int)
    if count < 1:
        raise InvalidArgument("Max tickets per player must be at least 1.")
    return count


def _display_name(value, field_name='Display name') -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{field_name} is required.")
    return value.strip()[:64]


# ---- Operations ----

@transactional
def create_room(caller_id, admin_display_name, name=None, rules=None, ticket_price=None,
                max_tickets_per_player=None, auto_call_interval=None) -> Room:
    require_caller(caller_id)
    cfg = current_app.config
    admin_name = _display_name(admin_display_name, 'Admin display name')
    rule_list = normalize_rules(rules if rules is not None else [])

    room = Room(
        room_code=generate_room_code(int(cfg.get('ROOM_CODE_LENGTH', 6))),
        name=(name or f"{admin_name}'s room").strip()[:120],
        admin_id=caller_id,
        admin_display_name=admin_name,
        status='idle',
        calling_mode='manual',
        auto_call_interval=_validate_interval(
            auto_call_interval if auto_call_interval is not None else cfg.get('DEFAULT_AUTO_CALL_INTERVAL_SEC', 5)
        ),
        ticket_price=_validate_price(ticket_price if ticket_price is not None else cfg.get('DEFAULT_TICKET_PRICE', 0)),
        max_tickets_per_player=_validate_max_tickets(
            max_tickets_per_player if max_tickets_per_player is not None else cfg.get('DEFAULT_MAX_TICKETS_PER_PLAYER', 6)
        ),
        total_money_collected=0.0,
        called_numbers_json='[]',
        game_number=0,
    )
    _replace_rules(room, rule_list)
    room.players.append(PlayerPresence(
        user_id=caller_id,
        display_name=f"{admin_name} (Admin)",
        ticket_count=0,
        is_admin=True,
        online=True,
        last_seen=time.time(),
    ))
    db.session.add(room)
    db.session.flush()
    current_app.logger.info(f"[room-created] room={room.room_code} admin={caller_id} rules={len(rule_list)}")
    return room


@transactional
def update_room_config(caller_id, room_code, **changes) -> Room:
    room = lock_room(room_code)
    require_admin(room, caller_id, 'update the room configuration')
    if room.status != 'idle':
        raise FailedPrecondition(f"Room configuration can only change while idle (status: {room.status}).")
    unknown = set(changes) - set(CONFIGURABLE_FIELDS)
    if unknown:
        raise InvalidArgument(f"Unknown configuration fields: {', '.join(sorted(unknown))}.")

    if changes.get('name') is not None:
        room.name = _display_name(changes['name'], 'Room name')[:120]
    if changes.get('ticket_price') is not None:
        room.ticket_price = _validate_price(changes['ticket_price'])
    if changes.get('max_tickets_per_player') is not None:
        room.max_tickets_per_player = _validate_max_tickets(changes['max_tickets_per_player'])
    if changes.get('auto_call_interval') is not None:
        room.auto_call_interval = _validate_interval(changes['auto_call_interval'])
    if changes.get('rules') is not None:
        rules = normalize_rules(changes['rules'])
        room.rules.clear()
        db.session.flush()
        _replace_rules(room, rules)
    touch(room)
    current_app.logger.info(f"[room-config] room={room.room_code} fields={sorted(k for k, v in changes.items() if v is not None)}")
    return room


@transactional
def set_lifecycle(caller_id, room_code, action) -> dict:
    room = lock_room(room_code)
    require_admin(room, caller_id, f"{action} the game")
    previous = room.status
    summary = RoomStateMachine.apply(room, action)
    current_app.logger.info(f"[lifecycle] room={room.room_code} action={action} {previous}->{room.status}")
    return {'status': room.status, 'summary': summary}


@transactional
def set_calling_mode(caller_id, room_code, mode, interval=None) -> Room:
    room = lock_room(room_code)
    require_admin(room, caller_id, 'set the calling mode')
    if mode not in CALLING_MODES:
        raise InvalidArgument("Invalid calling mode. Must be 'manual' or 'auto'.")
    if mode == 'auto':
        if room.status == 'stopped':
            raise FailedPrecondition("Cannot enable auto-call on a stopped game.")
        room.auto_call_interval = _validate_interval(interval if interval is not None else room.auto_call_interval)
    room.calling_mode = mode
    touch(room)
    current_app.logger.info(f"[calling-mode] room={room.room_code} mode={mode} interval={room.auto_call_interval}")
    return room


@transactional
def join_room(caller_id, room_code, display_name) -> PlayerPresence:
    require_caller(caller_id)
    name = _display_name(display_name, 'Player name')
    room = lock_room(room_code)
    presence = room.player(caller_id)
    if presence is None:
        presence = PlayerPresence(
            user_id=caller_id,
            display_name=name,
            ticket_count=0,
            is_admin=room.admin_id == caller_id,
        )
        room.players.append(presence)
    else:
        presence.display_name = name if not presence.is_admin else presence.display_name
    presence.online = True
    presence.last_seen = time.time()
    touch(room)
    current_app.logger.info(f"[join] room={room.room_code} user={caller_id} name={name}")
    return presence


def touch_presence(caller_id, room_code, online=True) -> bool:
    """Refresh a player's last-seen stamp; never raises."""
    if caller_id is None or not room_code:
        current_app.logger.warning(f"[presence-skip] room={room_code} user={caller_id} missing identity")
        return False
    try:
        room = Room.query.filter_by(room_code=str(room_code).upper()).first()
        presence = room.player(caller_id) if room else None
        if presence is None:
            current_app.logger.warning(f"[presence-skip] room={room_code} user={caller_id} not in room")
            return False
        presence.last_seen = time.time()
        presence.online = online
        db.session.commit()
        return True
    except Exception as exc:
        db.session.rollback()
        current_app.logger.warning(f"[presence-fail] room={room_code} user={caller_id} error={exc}")
        return False


def get_room(room_code) -> Room:
    room = Room.query.filter_by(room_code=(room_code or '').strip().upper()).first()
    if not room:
        raise NotFound(f"Room {room_code} not found.")
    return room


def room_state(room: Room, viewer_id=None) -> dict:
    payload = room.to_dict()
    payload['is_admin'] = viewer_id is not None and viewer_id == room.admin_id
    return payload
