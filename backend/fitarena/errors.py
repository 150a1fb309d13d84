"""
backend/fitarena/errors.py

Purpose:
    Typed failures raised by the battle record and service. Each carries a
    stable ``code`` string and the HTTP status the API layer maps it to.
"""


class BattleError(Exception):
    """Base class for all battle engine failures."""

    code = "battle_error"
    http_status = 400

    def __init__(self, message: str, *, reason: str | None = None):
        super().__init__(message)
        self.message = message
        self.reason = reason

    def to_dict(self) -> dict:
        payload = {"detail": self.message, "code": self.code}
        if self.reason:
            payload["reason"] = self.reason
        return payload


class NotFound(BattleError):
    code = "not_found"
    http_status = 404


class InvalidState(BattleError):
    """Mutator invoked while the battle status does not allow it."""

    code = "invalid_state"
    http_status = 409


class AlreadyHasOpponent(BattleError):
    code = "already_has_opponent"
    http_status = 409


class NotParticipant(BattleError):
    code = "not_participant"
    http_status = 403


class SpectatorsDisallowed(BattleError):
    code = "spectators_disallowed"
    http_status = 403


class ValidationError(BattleError):
    code = "validation_error"
    http_status = 422


class ConcurrentModification(BattleError):
    """Stored version moved on between load and replace."""

    code = "concurrent_modification"
    http_status = 409
