"""Business error taxonomy.

Every rule violation raised by the services is a ``TambolaError``. The
HTTP layer renders them as ``{"error": message, "code": kind}`` with the
class' status code; nothing else needs to know about transport.
"""


class TambolaError(Exception):
    """Base class for all game errors."""
    kind = 'internal'
    status_code = 500

    def __init__(self, message=None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self):
        return {'error': self.message, 'code': self.kind}


class Unauthenticated(TambolaError):
    kind = 'unauthenticated'
    status_code = 401


class PermissionDenied(TambolaError):
    kind = 'permission-denied'
    status_code = 403


class NotFound(TambolaError):
    kind = 'not-found'
    status_code = 404


class InvalidArgument(TambolaError):
    kind = 'invalid-argument'
    status_code = 400


class OutOfRange(InvalidArgument):
    """Manual number outside 1..90."""


class FailedPrecondition(TambolaError):
    kind = 'failed-precondition'
    status_code = 400


class InvalidTransition(FailedPrecondition):
    """Lifecycle action not allowed from the room's current status."""

    def __init__(self, action, current, required):
        self.action = action
        self.current = current
        self.required = tuple(required)
        super().__init__(
            f"Cannot {action} game: status is '{current}', "
            f"requires one of {', '.join(self.required)}."
        )


class AlreadyExists(TambolaError):
    kind = 'already-exists'
    status_code = 409


class DuplicateNumber(AlreadyExists):
    """Manual number already called in this game."""


class AlreadyProcessed(AlreadyExists):
    """Ticket request already approved or rejected."""


class ResourceExhausted(TambolaError):
    kind = 'resource-exhausted'
    status_code = 429


class AllNumbersCalled(ResourceExhausted):
    def __init__(self, room_code):
        self.room_code = room_code
        super().__init__(f"All 90 numbers have been called in room {room_code}. Game stopped.")


class Contention(TambolaError):
    """Transaction lost too many optimistic races; safe to retry."""
    kind = 'aborted'
    status_code = 409


class Internal(TambolaError):
    kind = 'internal'
    status_code = 500


class GenerationFailure(Internal):
    """No valid ticket could be produced within the retry budget."""


class UnknownRule(TambolaError):
    """Prize pattern identifier does not resolve to a known pattern."""
    kind = 'invalid-argument'
    status_code = 400

    def __init__(self, identifier):
        self.identifier = identifier
        super().__init__(f"No prize pattern matches rule '{identifier}'.")


class RaiseAfterCommit(Exception):
    """Commit the transaction's writes, then raise ``error`` to the caller.

    Used where a rejection must still leave a trace, e.g. a claim flipped to
    ``rejected_admin`` or a room stopped after its 90th number.
    """

    def __init__(self, error: TambolaError):
        self.error = error
        super().__init__(error.message)
