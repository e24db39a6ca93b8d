"""Utility helpers for distributing what a party brings home."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

__all__ = ["ReturnShare", "format_loot", "share_summary", "split_evenly"]


@dataclass(frozen=True)
class ReturnShare:
    """Hearts, stamina and items handed back to one party member."""

    character_id: str
    name: str
    hearts: int = 0
    stamina: int = 0
    items: tuple[str, ...] = ()


def split_evenly(amount: int, count: int) -> list[int]:
    """Split ``amount`` into ``count`` shares; earlier indices receive the remainder."""

    if count <= 0:
        return []
    base, remainder = divmod(max(0, int(amount)), count)
    return [base + 1 if index < remainder else base for index in range(count)]



def format_loot(loot: dict[str, int] | None) -> str:
    if not loot:
        return "nothing"
    return ", ".join(
        name if quantity == 1 else f"{name} x{quantity}" for name, quantity in sorted(loot.items())
    )


def share_summary(shares: Sequence[ReturnShare]) -> str:
    return "\n".join(
        f"{share.name}: {share.hearts} hearts, {share.stamina} stamina" for share in shares
    )
