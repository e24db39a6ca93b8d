"""Weighted outcome rolls with discovery caps and anti-repeat rerolls."""

from __future__ import annotations

import enum
import logging
import math
import random
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Protocol, Sequence

from .config import EngineConfig
from .party import Expedition

__all__ = [
    "COUNTED_DISCOVERIES",
    "DiscoveryTracker",
    "OutcomeKind",
    "OutcomeRoller",
    "OutcomeTable",
    "RollContext",
    "RollResult",
]

log = logging.getLogger(__name__)


class OutcomeKind(str, enum.Enum):
    MONSTER = "monster"
    ITEM = "item"
    EXPLORED = "explored"
    FAIRY = "fairy"
    CHEST = "chest"
    OLD_MAP = "old_map"
    RUINS = "ruins"
    RELIC = "relic"
    CAMP = "camp"
    MONSTER_CAMP = "monster_camp"
    GROTTO = "grotto"

    @property
    def is_counted_discovery(self) -> bool:
        return self in COUNTED_DISCOVERIES


COUNTED_DISCOVERIES = frozenset(
    {OutcomeKind.MONSTER_CAMP, OutcomeKind.GROTTO, OutcomeKind.RELIC, OutcomeKind.RUINS}
)

_ROLL_OUTCOMES = frozenset(kind.value for kind in OutcomeKind)


class DiscoveryRecord(Protocol):
    type: str
    discovery_key: str


class OutcomeTable:
    """Immutable weight table; the weights must sum to exactly 1.0."""

    def __init__(self, weights: Mapping[str, float]) -> None:
        cleaned: dict[OutcomeKind, float] = {}
        for key, value in weights.items():
            try:
                kind = OutcomeKind(key)
            except ValueError as exc:
                raise ValueError(f"Unknown outcome '{key}' in weight table") from exc
            weight = float(value)
            if weight < 0:
                raise ValueError(f"Outcome '{key}' has a negative weight")
            if weight > 0:
                cleaned[kind] = weight
        total = sum(cleaned.values())
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"Outcome weights must sum to 1.0 (got {total:.6f})")
        self._weights: Mapping[OutcomeKind, float] = MappingProxyType(cleaned)

    @classmethod
    def from_config(cls, config: EngineConfig) -> "OutcomeTable":
        return cls(config.outcome_weights)

    @property
    def weights(self) -> Mapping[OutcomeKind, float]:
        return self._weights

    def total(self) -> float:
        return math.fsum(self._weights.values())

    def draw(self, rng: random.Random) -> OutcomeKind:
        point = rng.random()
        cumulative = 0.0
        kinds = list(self._weights)
        for kind in kinds:
            cumulative += self._weights[kind]
            if point < cumulative:
                return kind
        return kinds[-1]


@dataclass(frozen=True)
class RollContext:
    """Everything the reroll rules look at for one draw."""

    party: Expedition
    character_name: str
    square: str
    quadrant: str
    map_discoveries: Sequence[DiscoveryRecord] = ()


@dataclass(frozen=True)
class RollResult:
    kind: OutcomeKind
    rerolls: int = 0
    fell_back: bool = False


class DiscoveryTracker:
    """Count discoveries across the shared map and the party's own log."""

    def __init__(self, max_per_square: int = 3) -> None:
        self.max_per_square = max_per_square

    def counted_keys(
        self, party: Expedition, square: str, map_discoveries: Iterable[DiscoveryRecord]
    ) -> set[str]:
        keys = {
            record.discovery_key
            for record in map_discoveries
            if record.type in _counted_values()
        }
        for entry in party.entries_at(square):
            if (
                entry.discovery_key
                and entry.discovery_status == "confirmed"
                and entry.outcome in _counted_values()
            ):
                keys.add(entry.discovery_key)
        return keys

    def counted_discoveries(
        self, party: Expedition, square: str, map_discoveries: Iterable[DiscoveryRecord]
    ) -> int:
        return len(self.counted_keys(party, square, map_discoveries))

    def square_full(
        self, party: Expedition, square: str, map_discoveries: Iterable[DiscoveryRecord]
    ) -> bool:
        return self.counted_discoveries(party, square, map_discoveries) >= self.max_per_square

    def has_grotto(
        self, party: Expedition, square: str, map_discoveries: Iterable[DiscoveryRecord]
    ) -> bool:
        if any(record.type == OutcomeKind.GROTTO.value for record in map_discoveries):
            return True
        return any(
            entry.outcome == OutcomeKind.GROTTO.value
            and entry.discovery_key
            and entry.discovery_status != "declined"
            for entry in party.entries_at(square)
        )

    def has_relic(self, party: Expedition, character_name: str) -> bool:
        lowered = character_name.casefold()
        return any(
            entry.outcome == OutcomeKind.RELIC.value
            and entry.character_name.casefold() == lowered
            and entry.discovery_status != "declined"
            for entry in party.progress_log
        )


def _counted_values() -> frozenset[str]:
    return frozenset(kind.value for kind in COUNTED_DISCOVERIES)


class OutcomeRoller:
    """Draw outcomes and reroll those that break discovery or repeat rules."""

    def __init__(
        self,
        table: OutcomeTable,
        tracker: DiscoveryTracker,
        *,
        reroll_cap: int = 50,
        keep_chance: float = 0.25,
        fallback: OutcomeKind = OutcomeKind.ITEM,
        rng: random.Random | None = None,
    ) -> None:
        self.table = table
        self.tracker = tracker
        self.reroll_cap = max(1, reroll_cap)
        self.keep_chance = keep_chance
        self.fallback = fallback
        self._rng = rng or random.Random()

    @classmethod
    def from_config(
        cls, config: EngineConfig, *, rng: random.Random | None = None
    ) -> "OutcomeRoller":
        return cls(
            OutcomeTable.from_config(config),
            DiscoveryTracker(config.max_discoveries_per_square),
            reroll_cap=config.reroll_cap,
            keep_chance=config.discovery_keep_chance,
            fallback=OutcomeKind(config.fallback_outcome),
            rng=rng,
        )

    def roll(self, context: RollContext) -> RollResult:
        for attempt in range(self.reroll_cap):
            kind = self.table.draw(self._rng)
            reason = self.reroll_reason(kind, context)
            if reason is None:
                return RollResult(kind=kind, rerolls=attempt)
            log.debug("Rerolling %s for %s: %s", kind.value, context.character_name, reason)
        log.warning(
            "Outcome reroll cap (%s) reached for expedition %s; falling back to %s",
            self.reroll_cap,
            context.party.expedition_id,
            self.fallback.value,
        )
        return RollResult(kind=self.fallback, rerolls=self.reroll_cap, fell_back=True)

    def reroll_reason(self, kind: OutcomeKind, context: RollContext) -> str | None:
        """Return why ``kind`` must be redrawn, or ``None`` if it stands."""

        party = context.party
        if kind is OutcomeKind.EXPLORED and self._last_outcome_at(context) == kind.value:
            return "explored twice in a row here"
        if kind.is_counted_discovery:
            count = self.tracker.counted_discoveries(party, context.square, context.map_discoveries)
            if count >= self.tracker.max_per_square:
                return "square discovery cap reached"
            if kind is OutcomeKind.GROTTO and self.tracker.has_grotto(
                party, context.square, context.map_discoveries
            ):
                return "square already has a grotto"
            if kind is OutcomeKind.RELIC and self.tracker.has_relic(party, context.character_name):
                return "relic already found by this character"
            if count >= 1 and self._rng.random() >= self.keep_chance:
                return "discovery thinned out"
        return None

    @staticmethod
    def _last_outcome_at(context: RollContext) -> str | None:
        for entry in reversed(context.party.entries_at(context.square, context.quadrant)):
            if entry.outcome in _ROLL_OUTCOMES:
                return entry.outcome
        return None
