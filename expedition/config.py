"""Immutable tuning values for the expedition engine."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml

__all__ = [
    "ConfigError",
    "CostSchedule",
    "DEFAULT_OUTCOME_WEIGHTS",
    "DEFAULT_TRIAL_WEIGHTS",
    "EngineConfig",
    "TargetPracticeSettings",
    "load_config",
]


class ConfigError(ValueError):
    """Raised when configuration values fail validation."""


DEFAULT_OUTCOME_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        "monster": 0.18,
        "item": 0.32,
        "explored": 0.17,
        "fairy": 0.05,
        "chest": 0.03,
        "old_map": 0.03,
        "ruins": 0.04,
        "relic": 0.02,
        "camp": 0.06,
        "monster_camp": 0.08,
        "grotto": 0.02,
    }
)

DEFAULT_TRIAL_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        "blessing": 1.0,
        "target_practice": 1.0,
        "puzzle": 1.0,
        "maze": 1.0,
        "test_of_power": 1.0,
    }
)

_QUADRANT_STATES = ("unexplored", "explored", "secured")


def _frozen(mapping: Mapping[str, object]) -> Mapping[str, object]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class CostSchedule:
    """Stamina costs for every resource-consuming action."""

    roll: Mapping[str, int] = field(
        default_factory=lambda: _frozen({"unexplored": 2, "explored": 1, "secured": 0})
    )
    move: Mapping[str, int] = field(
        default_factory=lambda: _frozen({"unexplored": 2, "explored": 1, "secured": 0})
    )
    secure: int = 5
    secure_materials: tuple[str, ...] = ("Wood", "Eldin Ore")
    camp: int = 3
    cleanse: int = 1
    retreat: int = 1
    chest: int = 1

    def roll_cost(self, state: str) -> int:
        return int(self.roll.get(state, self.roll["unexplored"]))

    def move_cost(self, state: str) -> int:
        return int(self.move.get(state, self.move["unexplored"]))

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "CostSchedule":
        defaults = cls()
        values: dict[str, object] = {}
        for name in ("roll", "move"):
            raw = data.get(name)
            if raw is None:
                continue
            if not isinstance(raw, Mapping):
                raise ConfigError(f"costs.{name} must be a mapping of quadrant state to cost")
            merged = dict(getattr(defaults, name))
            for state, cost in raw.items():
                if state not in _QUADRANT_STATES:
                    raise ConfigError(f"costs.{name} has unknown quadrant state '{state}'")
                merged[str(state)] = _non_negative(f"costs.{name}.{state}", cost)
            values[name] = _frozen(merged)
        for name in ("secure", "camp", "cleanse", "retreat", "chest"):
            if name in data:
                values[name] = _non_negative(f"costs.{name}", data[name])
        materials = data.get("secure_materials")
        if materials is not None:
            if isinstance(materials, (str, bytes)) or not isinstance(materials, (list, tuple)):
                raise ConfigError("costs.secure_materials must be a list of item names")
            values["secure_materials"] = tuple(str(item) for item in materials)
        return replace(defaults, **values)


@dataclass(frozen=True)
class TargetPracticeSettings:
    """Thresholds (out of 100) for the target practice trial."""

    fail_threshold: int = 15
    miss_threshold: int = 40
    required_successes: int = 3
    bonus: int = 5
    bonus_jobs: tuple[str, ...] = ("hunter", "guardian")
    bonus_item_keyword: str = "bow"


@dataclass(frozen=True)
class EngineConfig:
    """Tuning values injected into the roller, ledger and trial engine."""

    outcome_weights: Mapping[str, float] = field(
        default_factory=lambda: _frozen(DEFAULT_OUTCOME_WEIGHTS)
    )
    trial_weights: Mapping[str, float] = field(
        default_factory=lambda: _frozen(DEFAULT_TRIAL_WEIGHTS)
    )
    costs: CostSchedule = field(default_factory=CostSchedule)
    target_practice: TargetPracticeSettings = field(default_factory=TargetPracticeSettings)
    reroll_cap: int = 50
    fallback_outcome: str = "item"
    discovery_keep_chance: float = 0.25
    max_discoveries_per_square: int = 3
    max_party_size: int = 4
    loadout_size: int = 3
    raid_tier_threshold: int = 5
    retreat_base_chance: float = 0.50
    retreat_step: float = 0.05
    retreat_cap: float = 0.95
    choice_timeout_seconds: int = 300
    recovery_days: int = 7
    raid_cooldown_hours: int = 4
    fairy_hearts: int = 5
    safe_haven_hearts: int = 1
    safe_haven_stamina: int = 1
    camp_hearts: int = 2
    cleanse_item: str = "Goddess Plume"
    reward_item: str = "Spirit Orb"
    old_map_item: str = "Old Map"
    relic_item: str = "Unappraised Relic"
    collapse_steps: int = 3
    maze_size: int = 12
    entertainer_multiplier: float = 1.5

    @property
    def choice_timeout(self) -> timedelta:
        return timedelta(seconds=self.choice_timeout_seconds)

    @property
    def recovery_period(self) -> timedelta:
        return timedelta(days=self.recovery_days)

    @property
    def raid_cooldown(self) -> timedelta:
        return timedelta(hours=self.raid_cooldown_hours)

    def retreat_chance(self, failed_attempts: int) -> float:
        """Return the retreat success chance after ``failed_attempts`` failures."""

        attempts = max(0, int(failed_attempts))
        return min(self.retreat_base_chance + self.retreat_step * attempts, self.retreat_cap)

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "EngineConfig":
        if not isinstance(data, Mapping):
            raise ConfigError("Engine configuration must be a mapping")
        known = {item.name: item for item in fields(cls)}
        values: dict[str, object] = {}
        for key, raw in data.items():
            if key not in known:
                raise ConfigError(f"Unknown configuration key '{key}'")
            if key in {"outcome_weights", "trial_weights"}:
                values[key] = _weights(key, raw)
            elif key == "costs":
                if not isinstance(raw, Mapping):
                    raise ConfigError("costs must be a mapping")
                values[key] = CostSchedule.from_mapping(raw)
            elif key == "target_practice":
                if not isinstance(raw, Mapping):
                    raise ConfigError("target_practice must be a mapping")
                try:
                    values[key] = replace(TargetPracticeSettings(), **dict(raw))
                except TypeError as exc:
                    raise ConfigError(f"Invalid target_practice settings: {exc}") from exc
            else:
                default = getattr(cls(), key)
                try:
                    values[key] = type(default)(raw)
                except (TypeError, ValueError) as exc:
                    raise ConfigError(f"Invalid value for '{key}': {raw!r}") from exc
        config = cls(**values)
        if config.reroll_cap < 1:
            raise ConfigError("reroll_cap must be at least 1")
        if not 0.0 <= config.discovery_keep_chance <= 1.0:
            raise ConfigError("discovery_keep_chance must be between 0 and 1")
        if config.fallback_outcome not in config.outcome_weights:
            raise ConfigError(f"fallback_outcome '{config.fallback_outcome}' has no weight entry")
        return config


def _non_negative(name: str, value: object) -> int:
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer") from exc
    if number < 0:
        raise ConfigError(f"{name} must not be negative")
    return number


def _weights(name: str, raw: object) -> Mapping[str, float]:
    if not isinstance(raw, Mapping) or not raw:
        raise ConfigError(f"{name} must be a non-empty mapping")
    weights: dict[str, float] = {}
    for key, value in raw.items():
        try:
            weight = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name}.{key} must be a number") from exc
        if weight < 0:
            raise ConfigError(f"{name}.{key} must not be negative")
        weights[str(key)] = weight
    return _frozen(weights)


def load_config(path: Path | None) -> EngineConfig:
    """Load an :class:`EngineConfig` from a YAML file, or defaults if ``path`` is ``None``."""

    if path is None:
        return EngineConfig()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read engine configuration from {path}") from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse engine configuration in {path}") from exc
    if raw is None:
        return EngineConfig()
    return EngineConfig.from_mapping(raw)
