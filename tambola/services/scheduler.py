import time
from typing import Optional

from flask import current_app

from tambola import db, socketio
from tambola.errors import AllNumbersCalled, TambolaError
from tambola.models import Room
from tambola.services.numbers import call_next, interval_elapsed


_driver_started = False


def run_auto_call_tick(now: Optional[float] = None) -> int:
    """Call one number in every auto room whose interval has elapsed.

    - Must run inside an app context
    - Failures are per room: logged, never raised
    - ``call_next`` re-checks status, mode and interval under the room lock,
      so two overlapping ticks cannot double-call
    - Broadcasts number_called/state_update for each room it touched
    """
    from tambola.socketio_events import emit_room_event

    now = now if now is not None else time.time()
    rooms = Room.query.filter_by(status='running', calling_mode='auto').all()
    codes = [r.room_code for r in rooms if interval_elapsed(r, now)]

    called = 0
    for code in codes:
        try:
            result = call_next(None, code, auto=True)
        except AllNumbersCalled as exc:
            current_app.logger.info(f"[autocall-exhausted] room={code} {exc.message}")
            emit_room_event(code, 'state_update', {'room_code': code})
            continue
        except TambolaError as exc:
            current_app.logger.warning(f"[autocall-fail] room={code} kind={exc.kind} error={exc.message}")
            continue
        if result is None:
            current_app.logger.info(f"[autocall-skip] room={code} state changed before call")
            continue
        called += 1
        emit_room_event(code, 'number_called', result.to_dict())
        emit_room_event(code, 'state_update', {'room_code': code})
    if called:
        current_app.logger.info(f"[autocall-tick] rooms={len(rooms)} called={called}")
    return called


def start_auto_caller(app) -> None:
    """Run ``run_auto_call_tick`` every AUTO_CALL_TICK_SEC in the background.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS
    - Only one driver per process
    """
    global _driver_started
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return
    if _driver_started:
        app.logger.info("[autocall-skip] driver already running")
        return
    _driver_started = True

    tick = float(app.config.get('AUTO_CALL_TICK_SEC', 1.0))
    app.logger.info(f"[autocall-start] tick={tick}s")

    def _worker():
        while True:
            socketio.sleep(tick)
            with app.app_context():
                try:
                    run_auto_call_tick()
                except Exception as exc:
                    # Keep the driver alive across database outages
                    db.session.rollback()
                    app.logger.error(f"[autocall-error] error={exc}")

    socketio.start_background_task(_worker)
