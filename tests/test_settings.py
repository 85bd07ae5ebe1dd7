import pytest

from balancer import coordinator_settings as cs
from balancer.balance_settings import (
    default_global_config,
    default_rebalance_config,
    effective_target_ratios,
    get_balance_settings,
)
from balancer.balance_types import ClassMap, DatasetSplit, ImageCategory, TargetRatios
from balancer.common.deep_merge import deep_merge, load_json_optional
from balancer.rebalance_types import SelectionStrategy


def test_defaults_without_config():
    settings = get_balance_settings()
    assert settings.class_map == ClassMap(t=0, ct=1)
    assert settings.target_ratios == TargetRatios(0.85, 0.10, 0.05)
    assert settings.tolerance == pytest.approx(0.02)
    assert settings.max_iterations == 50
    assert settings.selection_strategy is SelectionStrategy.RANDOM
    assert settings.image_extensions == [".png", ".jpg", ".jpeg"]
    assert not settings.hard_case.enabled


def test_values_come_from_settings(monkeypatch):
    monkeypatch.setattr(cs, "SETTINGS", {
        "dataset": {"image_extensions": ["PNG", "webp", ""]},
        "balance": {
            "target_ratios": {"player": 0.8, "background": 0.15, "hard_case": 0.05},
            "selection_strategy": "Fewest-Detections",
            "max_iterations": 7,
            "random_seed": 11,
            "hard_case": {"min_overlapping_pairs": 2},
        },
    })
    settings = get_balance_settings()
    assert settings.image_extensions == [".png", ".webp"]
    assert settings.target_ratios.background_ratio == pytest.approx(0.15)
    assert settings.selection_strategy is SelectionStrategy.FEWEST_DETECTIONS
    assert settings.max_iterations == 7
    assert settings.random_seed == 11
    assert settings.hard_case.enabled


def test_invalid_values_fall_back(monkeypatch):
    monkeypatch.setattr(cs, "SETTINGS", {
        "balance": {
            "target_ratios": {"player": "lots", "background": 3.0},
            "tolerance": True,
            "max_iterations": 0,
            "selection_strategy": "alphabetical",
            "class_map": {"t": 1, "ct": 1},
        },
    })
    settings = get_balance_settings()
    assert settings.target_ratios == TargetRatios()
    assert settings.tolerance == pytest.approx(0.02)
    assert settings.max_iterations == 50
    assert settings.selection_strategy is SelectionStrategy.RANDOM
    assert settings.class_map == ClassMap(t=0, ct=1)


def test_cache_follows_reloaded_settings(monkeypatch):
    first = get_balance_settings()
    assert get_balance_settings() is first

    monkeypatch.setattr(cs, "SETTINGS", {"balance": {"tolerance": 0.1}})
    second = get_balance_settings()
    assert second is not first
    assert second.tolerance == pytest.approx(0.1)


def test_default_configs_apply_overrides(monkeypatch):
    monkeypatch.setattr(cs, "SETTINGS", {"balance": {"tolerance": 0.05, "preserve_ct_t_balance": False}})

    single = default_rebalance_config(category=ImageCategory.T_ONLY, destination_split=DatasetSplit.TEST, random_seed=None)
    assert single.category is ImageCategory.T_ONLY
    assert single.destination_split is DatasetSplit.TEST
    assert single.preserve_ct_t_balance is False

    multi = default_global_config(max_iterations=3)
    assert multi.tolerance == pytest.approx(0.05)
    assert multi.max_iterations == 3
    assert multi.splits == DatasetSplit.ordered()


def test_deep_merge_nested():
    merged = deep_merge({"balance": {"tolerance": 0.02, "class_map": {"t": 0}}}, {"balance": {"class_map": {"ct": 1}}})
    assert merged == {"balance": {"tolerance": 0.02, "class_map": {"t": 0, "ct": 1}}}


def test_load_json_with_comments(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{\n  // team ids\n  "class_map": {"t": 0, "ct": 1}\n}\n', encoding="utf-8")
    assert load_json_optional(path, None) == {"class_map": {"t": 0, "ct": 1}}
    assert load_json_optional(tmp_path / "missing.json", {}) == {}


def test_hard_case_share_joins_players_without_a_rule():
    assert effective_target_ratios() == TargetRatios(0.90, 0.10, 0.0)
    assert default_global_config().target_ratios == TargetRatios(0.90, 0.10, 0.0)
    assert default_rebalance_config(
        target_ratios=TargetRatios(0.80, 0.15, 0.05),
    ).target_ratios == TargetRatios(0.85, 0.15, 0.0)


def test_hard_case_share_kept_with_an_active_rule(monkeypatch):
    monkeypatch.setattr(cs, "SETTINGS", {"balance": {"hard_case": {"min_box_area": 0.001}}})
    assert effective_target_ratios() == TargetRatios()
    assert default_global_config().target_ratios == TargetRatios()


def test_ct_t_ratio_setting(monkeypatch):
    assert default_global_config().ct_t_ratio == pytest.approx(0.5)
    monkeypatch.setattr(cs, "SETTINGS", {"balance": {"ct_t_ratio": 0.6}})
    assert default_global_config().ct_t_ratio == pytest.approx(0.6)
    monkeypatch.setattr(cs, "SETTINGS", {"balance": {"ct_t_ratio": 4}})
    assert default_global_config().ct_t_ratio == pytest.approx(0.5)
