"""Number calling for running games, manual or auto."""
import random
import time
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from tambola.errors import (
    AllNumbersCalled,
    DuplicateNumber,
    FailedPrecondition,
    OutOfRange,
    RaiseAfterCommit,
)
from tambola.services.rooms import RoomStateMachine, require_admin
from tambola.services.transactions import lock_room, touch, transactional

LOWEST_NUMBER = 1
HIGHEST_NUMBER = 90
ALL_NUMBERS = frozenset(range(LOWEST_NUMBER, HIGHEST_NUMBER + 1))

NUMBER_PHRASES = {
    1: "Kelly's Eye", 2: "One Little Duck", 3: "Cup of Tea", 4: "Knock at the Door", 5: "Man Alive",
    6: "Tom Mix", 7: "Lucky Seven", 8: "Garden Gate", 9: "Doctor's Orders", 10: "Prime Minister's Den",
    11: "Legs Eleven", 12: "One Dozen", 13: "Unlucky for Some", 14: "Valentine's Day", 15: "Young and Keen",
    16: "Sweet Sixteen", 17: "Dancing Queen", 18: "Coming of Age", 19: "Goodbye Teens", 20: "One Score",
    21: "Royal Salute", 22: "Two Little Ducks", 23: "The Lord is My Shepherd", 24: "Two Dozen", 25: "Duck and Dive",
    26: "Pick and Mix", 27: "Gateway to Heaven", 28: "In a State", 29: "Rise and Shine", 30: "Dirty Gertie",
    31: "Get Up and Run", 32: "Buckle My Shoe", 33: "All the Threes", 34: "Ask for More", 35: "Jump and Jive",
    36: "Three Dozen", 37: "More than Eleven", 38: "Christmas Cake", 39: "Steps", 40: "Naughty Forty",
    41: "Time for Fun", 42: "Winnie the Pooh", 43: "Down on Your Knees", 44: "Droopy Drawers", 45: "Halfway There",
    46: "Up to Tricks", 47: "Four and Seven", 48: "Four Dozen", 49: "PC", 50: "Half a Century",
    51: "Tweak of the Thumb", 52: "Weeks in a Year", 53: "Stuck in the Tree", 54: "Clean the Floor", 55: "Snakes Alive",
    56: "Was She Worth It?", 57: "Heinz Varieties", 58: "Make Them Wait", 59: "Brighton Line", 60: "Five Dozen",
    61: "Bakers Bun", 62: "Turn the Screw", 63: "Tickle Me", 64: "Red Raw", 65: "Old Age Pension",
    66: "Clickety Click", 67: "Made in Heaven", 68: "Saving Grace", 69: "Either Way Up", 70: "Three Score and Ten",
    71: "Bang on the Drum", 72: "Six Dozen", 73: "Queen Bee", 74: "Candy Store", 75: "Strive and Strive",
    76: "Trombones", 77: "Sunset Strip", 78: "Heaven's Gate", 79: "One More Time", 80: "Eight and Blank",
    81: "Stop and Run", 82: "Straight On Through", 83: "Time for Tea", 84: "Seven Dozen", 85: "Staying Alive",
    86: "Between the Sticks", 87: "Torquay in Devon", 88: "Two Fat Ladies", 89: "Nearly There", 90: "Top of the Shop",
}


@dataclass
class CallResult:
    room_code: str
    number: int
    phrase: str
    total_called: int

    def to_dict(self):
        return {
            'room_code': self.room_code,
            'called_number': self.number,
            'phrase': self.phrase,
            'total_called': self.total_called,
        }


def _validate_manual(number, called) -> int:
    if isinstance(number, bool) or not isinstance(number, int):
        raise OutOfRange(f"Number must be a whole number between {LOWEST_NUMBER} and {HIGHEST_NUMBER}.")
    if number < LOWEST_NUMBER or number > HIGHEST_NUMBER:
        raise OutOfRange(f"Number {number} is outside {LOWEST_NUMBER}-{HIGHEST_NUMBER}.")
    if number in called:
        raise DuplicateNumber(f"Number {number} has already been called.")
    return number


def interval_elapsed(room, now: float) -> bool:
    if room.last_number_call_at is None:
        return True
    return now - room.last_number_call_at >= (room.auto_call_interval or 0)


@transactional
def call_next(caller_id, room_code, manual_number=None, auto=False,
              rng: Optional[random.Random] = None) -> Optional[CallResult]:
    """Append one number to the room's called set.

    ``auto`` calls come from the scheduler: no admin check, and they quietly
    return None when the room left auto mode or the interval has not passed.
    """
    room = lock_room(room_code)
    now = time.time()

    if auto:
        if room.status != 'running' or room.calling_mode != 'auto' or not interval_elapsed(room, now):
            return None
    else:
        require_admin(room, caller_id, 'call numbers')
        if room.status != 'running':
            raise FailedPrecondition(f"Game is not running. Current status: {room.status}.")

    called = room.called_numbers
    if len(called) >= len(ALL_NUMBERS):
        RoomStateMachine.apply(room, 'stop', now)
        current_app.logger.info(f"[all-called] room={room.room_code} stopping game")
        raise RaiseAfterCommit(AllNumbersCalled(room.room_code))

    called_set = set(called)
    if manual_number is not None and not auto:
        number = _validate_manual(manual_number, called_set)
    else:
        remaining = sorted(ALL_NUMBERS - called_set)
        number = (rng or random.SystemRandom()).choice(remaining)

    called.append(number)
    room.called_numbers = called
    room.latest_called_number = number
    room.latest_called_phrase = NUMBER_PHRASES.get(number, '')
    room.last_number_call_at = now
    if caller_id is not None:
        presence = room.player(caller_id)
        if presence is not None:
            presence.last_seen = now
    touch(room)

    current_app.logger.info(
        f"[number-called] room={room.room_code} number={number} total={len(called)} mode={'auto' if auto else 'manual'}"
    )
    return CallResult(room.room_code, number, room.latest_called_phrase, len(called))
