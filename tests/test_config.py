from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from expedition.config import ConfigError, EngineConfig, load_config


def test_defaults_match_the_published_costs() -> None:
    config = EngineConfig()

    assert config.costs.roll_cost("unexplored") == 2
    assert config.costs.roll_cost("explored") == 1
    assert config.costs.roll_cost("secured") == 0
    assert config.costs.move_cost("unknown") == 2
    assert config.costs.secure == 5
    assert config.costs.secure_materials == ("Wood", "Eldin Ore")
    assert config.choice_timeout.total_seconds() == 300
    assert config.recovery_period.days == 7


def test_from_mapping_overrides_selected_values() -> None:
    config = EngineConfig.from_mapping(
        {
            "reroll_cap": 10,
            "costs": {"camp": 4, "roll": {"explored": 2}},
            "target_practice": {"fail_threshold": 20},
        }
    )

    assert config.reroll_cap == 10
    assert config.costs.camp == 4
    assert config.costs.roll_cost("explored") == 2
    assert config.costs.roll_cost("unexplored") == 2
    assert config.target_practice.fail_threshold == 20
    assert config.target_practice.miss_threshold == 40


@pytest.mark.parametrize(
    "data",
    [
        {"unknown_key": 1},
        {"reroll_cap": 0},
        {"discovery_keep_chance": 1.5},
        {"outcome_weights": {"monster": 1.0}},
        {"outcome_weights": {"item": -1}},
        {"costs": {"roll": {"swamp": 1}}},
        {"costs": {"camp": -3}},
        {"costs": {"secure_materials": "Wood"}},
        {"target_practice": {"bogus": 1}},
    ],
)
def test_from_mapping_rejects_invalid_values(data) -> None:
    with pytest.raises(ConfigError):
        EngineConfig.from_mapping(data)


def test_load_config_from_yaml(tmp_path) -> None:
    path = tmp_path / "expedition.yaml"
    path.write_text("max_party_size: 3\nchoice_timeout_seconds: 120\n", encoding="utf-8")

    config = load_config(path)

    assert config.max_party_size == 3
    assert config.choice_timeout.total_seconds() == 120


def test_load_config_handles_missing_and_empty_files(tmp_path) -> None:
    assert load_config(None) == EngineConfig()

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config(empty) == EngineConfig()

    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("costs: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(broken)
