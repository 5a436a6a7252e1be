"""
Exceptions raised by the battle services.

All of them are ValueErrors so callers that only distinguish "bad request"
from "server error" keep working. BattleService turns them into result dicts
keyed by ``code``.
"""


class BattleError(ValueError):
    """Base class for expected battle failures."""

    code = "battle_error"


class NotFoundError(BattleError):
    """A lobby, match or invitation does not exist."""

    code = "not_found"


class PolicyViolationError(BattleError):
    """The caller is not allowed to perform this action."""

    code = "policy_violation"


class InvalidTransitionError(BattleError):
    """The entity is not in a state that allows this action."""

    code = "invalid_transition"


class ValidationError(BattleError):
    """Input is malformed (unknown format, bad amount, ...)."""

    code = "validation"
