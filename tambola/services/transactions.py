"""Atomic units of work against the room document.

Every room-mutating service runs under ``@transactional``:

* the room row is re-read with ``SELECT ... FOR UPDATE`` (``lock_room``)
  so status/ownership checks see the latest committed state,
* ``touch`` bumps the room's optimistic ``version`` so two units touching
  the same room can never both commit,
* a lost race (``StaleDataError``) rolls back and re-runs the whole unit;
  after ``TRANSACTION_MAX_ATTEMPTS`` it surfaces ``Contention``,
* business errors roll back and propagate untouched, except
  ``RaiseAfterCommit`` which commits first.
"""
from functools import wraps
import time

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from tambola import db
from tambola.errors import Contention, NotFound, RaiseAfterCommit
from tambola.models import Room


def transactional(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        attempts = int(current_app.config.get('TRANSACTION_MAX_ATTEMPTS', 5))
        for attempt in range(1, attempts + 1):
            deferred = None
            try:
                try:
                    result = func(*args, **kwargs)
                except RaiseAfterCommit as exc:
                    result, deferred = None, exc.error
                db.session.commit()
            except StaleDataError:
                db.session.rollback()
                current_app.logger.warning(
                    f"[txn-retry] op={func.__name__} attempt={attempt}/{attempts} lost optimistic race"
                )
                continue
            except Exception:
                db.session.rollback()
                raise
            if deferred is not None:
                raise deferred
            return result
        raise Contention(f"{func.__name__} could not commit after {attempts} attempts; please retry.")

    return wrapper


def lock_room(room_code) -> Room:
    """Load a room for update or raise ``NotFound``."""
    code = (room_code or '').strip().upper()
    room = Room.query.filter_by(room_code=code).with_for_update(nowait=False).first()
    if not room:
        raise NotFound(f"Room {code or room_code} not found.")
    return room


def touch(room: Room) -> None:
    room.updated_at = time.time()
