"""
Error taxonomy for the duel coordinator.

Validation errors derive from CoinDuelError and are reported to the
offending connection as an ``error`` event; state is never changed when
one is raised. The plain Exception subclasses at the bottom are
infrastructure or programming errors and are logged, not sent to clients.
"""


class CoinDuelError(Exception):
    """Base class for rejected client actions."""

    default_message = "Action not allowed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidPayload(CoinDuelError):
    default_message = "Malformed message"


class InsufficientFunds(CoinDuelError):
    default_message = "Insufficient coins for this bet"


class InvalidBetAmount(CoinDuelError):
    default_message = "Invalid bet amount"


class RoomNotFound(CoinDuelError):
    default_message = "Room not found"


class RoomNotAvailable(CoinDuelError):
    default_message = "Room is not available"


class RoomCodeExhausted(CoinDuelError):
    default_message = "Could not allocate a room code, please try again"


class NotYourTurn(CoinDuelError):
    default_message = "It's not your turn to call"


class AlreadyCalled(CoinDuelError):
    default_message = "This round has already been called"


class CallerCannotPredict(CoinDuelError):
    default_message = "The caller cannot predict this round"


class CallNotMadeYet(CoinDuelError):
    default_message = "Wait for your opponent to call first"


class AlreadyPredicted(CoinDuelError):
    default_message = "You have already predicted this round"


class PlayerNotFound(CoinDuelError):
    default_message = "Player not found"


class MatchNotFound(CoinDuelError):
    default_message = "Match not found"


class PlayerBusy(CoinDuelError):
    default_message = "Finish your current room or match first"


class DuplicateConnection(Exception):
    """A connection handle was registered twice."""


class IllegalTransition(Exception):
    """A player or round was moved into a state it cannot reach from its current one."""

    def __init__(self, kind: str, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Illegal {kind} transition: {current} -> {target}")


class StorageError(Exception):
    """The user store could not be read or written."""
