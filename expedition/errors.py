"""Exceptions raised by the expedition engine."""

from __future__ import annotations

__all__ = [
    "CharacterNotOwned",
    "ExpeditionError",
    "ExpeditionNotFound",
    "ExternalCollaboratorFailure",
    "InsufficientResources",
    "InvalidLocation",
    "InvariantViolation",
    "NotYourTurn",
    "RaidCooldownActive",
]


class ExpeditionError(RuntimeError):
    """Base class for errors surfaced to the acting player."""


class NotYourTurn(ExpeditionError):
    """Raised when a character acts outside of their turn."""

    def __init__(self, character_name: str, expected_name: str | None = None) -> None:
        message = f"It is not {character_name}'s turn."
        if expected_name:
            message = f"{message} Waiting on {expected_name}."
        super().__init__(message)
        self.character_name = character_name
        self.expected_name = expected_name


class ExpeditionNotFound(ExpeditionError):
    """Raised when no active expedition matches the given identifier."""

    def __init__(self, expedition_id: str) -> None:
        super().__init__(f"No active expedition with id '{expedition_id}'.")
        self.expedition_id = expedition_id


class CharacterNotOwned(ExpeditionError):
    """Raised when the user does not own the named party member."""

    def __init__(self, character_name: str) -> None:
        super().__init__(f"You do not control a party member named '{character_name}'.")
        self.character_name = character_name


class InvalidLocation(ExpeditionError):
    """Raised for unknown, unreachable or non-adjacent destinations."""


class InsufficientResources(ExpeditionError):
    """Raised when the party cannot cover an action's cost."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"The party needs {required} stamina (or hearts) but only has {available}."
        )
        self.required = required
        self.available = available


class InvariantViolation(ExpeditionError):
    """Raised when an action conflicts with the current expedition state."""


class ExternalCollaboratorFailure(ExpeditionError):
    """Raised when a required store write fails and the action is aborted."""


class RaidCooldownActive(ExpeditionError):
    """Raised when a village raid is requested during the global cooldown."""

    def __init__(self, remaining_seconds: float) -> None:
        minutes = max(1, int(remaining_seconds // 60))
        super().__init__(f"Raids are on cooldown for another {minutes} minute(s).")
        self.remaining_seconds = remaining_seconds
