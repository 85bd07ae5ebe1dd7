from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from balancer import coordinator_settings as cs
from balancer.balance_types import ClassMap, HardCaseRule, SplitRatios, TargetRatios
from balancer.log import warning
from balancer.rebalance_types import GlobalRebalanceConfig, RebalanceConfig, SelectionStrategy


def _coerce_float(value: Any, fallback: float, *, minimum: float = 0.0, maximum: float = 1.0) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if number < minimum or number > maximum:
        return fallback
    return number


def _coerce_int(value: Any, fallback: int, *, minimum: int = 0) -> int:
    if isinstance(value, bool):
        return fallback
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return number if number >= minimum else fallback


def _coerce_extensions(values: Sequence[str] | None, fallback: Sequence[str]) -> List[str]:
    if not isinstance(values, (list, tuple)) or not values:
        return list(fallback)
    cleaned: List[str] = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            continue
        ext = value.strip().lower()
        if not ext.startswith("."):
            ext = f".{ext}"
        if ext not in cleaned:
            cleaned.append(ext)
    return cleaned or list(fallback)


def _coerce_thresholds(values: Mapping[str, Any] | None, fallback: Mapping[str, float]) -> Dict[str, float]:
    thresholds = dict(fallback)
    if isinstance(values, dict):
        for key, value in values.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                thresholds[str(key)] = float(value)
    return thresholds


_BALANCE_DEFAULTS: Dict[str, Any] = {
    "image_extensions": [".png", ".jpg", ".jpeg"],
    "class_map": {"t": 0, "ct": 1},
    "target_ratios": {"player": 0.85, "background": 0.10, "hard_case": 0.05},
    "split_ratios": {"train": 0.70, "val": 0.20, "test": 0.10},
    "ct_t_ratio": 0.50,
    "tolerance": 0.02,
    "max_iterations": 50,
    "selection_strategy": "random",
    "preserve_ct_t_balance": True,
    "random_seed": None,
    "analysis_batch_size": 10,
    "integrity_batch_size": 50,
    "progress_interval": 5,
    "check_resolution": False,
    "hard_case": {"min_overlapping_pairs": 0, "overlap_iou": 0.5, "min_box_area": 0.0},
    "balance_score_thresholds": {
        "excellent": 0.95,
        "good": 0.85,
        "fair": 0.70,
        "poor": 0.50,
        "critical": 0.0,
    },
}


@dataclass(frozen=True)
class BalanceSettings:

    image_extensions: List[str]
    class_map: ClassMap
    target_ratios: TargetRatios
    split_ratios: SplitRatios
    ct_t_ratio: float
    tolerance: float
    max_iterations: int
    selection_strategy: SelectionStrategy
    preserve_ct_t_balance: bool
    random_seed: Optional[int]
    analysis_batch_size: int
    integrity_batch_size: int
    progress_interval: int
    check_resolution: bool
    hard_case: HardCaseRule
    balance_score_thresholds: Dict[str, float]


_SETTINGS_CACHE: BalanceSettings | None = None
_SETTINGS_SOURCE: Any = None


def reset_balance_settings() -> None:
    global _SETTINGS_CACHE, _SETTINGS_SOURCE
    _SETTINGS_CACHE = None
    _SETTINGS_SOURCE = None


def _build_class_map(raw: Any) -> ClassMap:
    defaults = _BALANCE_DEFAULTS["class_map"]
    if not isinstance(raw, dict):
        return ClassMap(t=defaults["t"], ct=defaults["ct"])
    t_id = _coerce_int(raw.get("t"), defaults["t"])
    ct_id = _coerce_int(raw.get("ct"), defaults["ct"])
    try:
        return ClassMap(t=t_id, ct=ct_id)
    except ValueError as exc:
        warning(f"Invalid balance.class_map ({exc}); using T={defaults['t']}, CT={defaults['ct']}")
        return ClassMap(t=defaults["t"], ct=defaults["ct"])


def get_balance_settings() -> BalanceSettings:
    global _SETTINGS_CACHE, _SETTINGS_SOURCE
    # reload_settings() swaps the SETTINGS object, which invalidates the cache
    if _SETTINGS_CACHE is not None and _SETTINGS_SOURCE is cs.SETTINGS:
        return _SETTINGS_CACHE

    _SETTINGS_SOURCE = cs.SETTINGS
    settings = cs.SETTINGS if isinstance(cs.SETTINGS, dict) else {}
    balance_config = settings.get("balance", {}) or {}
    dataset_config = settings.get("dataset", {}) or {}

    ratio_defaults = _BALANCE_DEFAULTS["target_ratios"]
    ratio_config = balance_config.get("target_ratios") or {}
    target_ratios = TargetRatios(
        player_ratio=_coerce_float(ratio_config.get("player"), ratio_defaults["player"]),
        background_ratio=_coerce_float(ratio_config.get("background"), ratio_defaults["background"]),
        hardcase_ratio=_coerce_float(ratio_config.get("hard_case"), ratio_defaults["hard_case"]),
    )

    split_defaults = _BALANCE_DEFAULTS["split_ratios"]
    split_config = balance_config.get("split_ratios") or {}
    split_ratios = SplitRatios(
        train=_coerce_float(split_config.get("train"), split_defaults["train"]),
        val=_coerce_float(split_config.get("val"), split_defaults["val"]),
        test=_coerce_float(split_config.get("test"), split_defaults["test"]),
    )

    hard_defaults = _BALANCE_DEFAULTS["hard_case"]
    hard_config = balance_config.get("hard_case") or {}
    hard_case = HardCaseRule(
        min_overlapping_pairs=_coerce_int(hard_config.get("min_overlapping_pairs"), hard_defaults["min_overlapping_pairs"]),
        overlap_iou=_coerce_float(hard_config.get("overlap_iou"), hard_defaults["overlap_iou"]),
        min_box_area=_coerce_float(hard_config.get("min_box_area"), hard_defaults["min_box_area"]),
    )

    seed_value = balance_config.get("random_seed", _BALANCE_DEFAULTS["random_seed"])
    random_seed = _coerce_int(seed_value, 0) if seed_value is not None else None

    _SETTINGS_CACHE = BalanceSettings(
        image_extensions=_coerce_extensions(
            dataset_config.get("image_extensions"),
            _BALANCE_DEFAULTS["image_extensions"],
        ),
        class_map=_build_class_map(balance_config.get("class_map")),
        target_ratios=target_ratios,
        split_ratios=split_ratios,
        ct_t_ratio=_coerce_float(balance_config.get("ct_t_ratio"), _BALANCE_DEFAULTS["ct_t_ratio"]),
        tolerance=_coerce_float(balance_config.get("tolerance"), _BALANCE_DEFAULTS["tolerance"]),
        max_iterations=_coerce_int(balance_config.get("max_iterations"), _BALANCE_DEFAULTS["max_iterations"], minimum=1),
        selection_strategy=SelectionStrategy.parse(
            balance_config.get("selection_strategy"),
            SelectionStrategy(_BALANCE_DEFAULTS["selection_strategy"]),
        ),
        preserve_ct_t_balance=bool(balance_config.get("preserve_ct_t_balance", _BALANCE_DEFAULTS["preserve_ct_t_balance"])),
        random_seed=random_seed,
        analysis_batch_size=_coerce_int(balance_config.get("analysis_batch_size"), _BALANCE_DEFAULTS["analysis_batch_size"], minimum=1),
        integrity_batch_size=_coerce_int(balance_config.get("integrity_batch_size"), _BALANCE_DEFAULTS["integrity_batch_size"], minimum=1),
        progress_interval=_coerce_int(balance_config.get("progress_interval"), _BALANCE_DEFAULTS["progress_interval"], minimum=1),
        check_resolution=bool(balance_config.get("check_resolution", _BALANCE_DEFAULTS["check_resolution"])),
        hard_case=hard_case,
        balance_score_thresholds=_coerce_thresholds(
            balance_config.get("balance_score_thresholds"),
            _BALANCE_DEFAULTS["balance_score_thresholds"],
        ),
    )
    return _SETTINGS_CACHE


def effective_target_ratios(ratios: Optional[TargetRatios] = None) -> TargetRatios:
    """Target ratios as the balancer applies them.

    Without an active hard-case rule no image can ever be a hard case, so the
    hard-case share moves to the player group instead of staying unreachable.
    """
    settings = get_balance_settings()
    ratios = ratios or settings.target_ratios
    if settings.hard_case.enabled:
        return ratios
    return ratios.without_hard_case()


def default_rebalance_config(**overrides: Any) -> RebalanceConfig:
    settings = get_balance_settings()
    values: Dict[str, Any] = {
        "target_ratios": settings.target_ratios,
        "selection_strategy": settings.selection_strategy,
        "preserve_ct_t_balance": settings.preserve_ct_t_balance,
        "random_seed": settings.random_seed,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    values["target_ratios"] = effective_target_ratios(values["target_ratios"])
    return RebalanceConfig(**values)


def default_global_config(**overrides: Any) -> GlobalRebalanceConfig:
    settings = get_balance_settings()
    values: Dict[str, Any] = {
        "target_ratios": settings.target_ratios,
        "selection_strategy": settings.selection_strategy,
        "preserve_ct_t_balance": settings.preserve_ct_t_balance,
        "tolerance": settings.tolerance,
        "max_iterations": settings.max_iterations,
        "split_ratios": settings.split_ratios,
        "ct_t_ratio": settings.ct_t_ratio,
        "random_seed": settings.random_seed,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    values["target_ratios"] = effective_target_ratios(values["target_ratios"])
    return GlobalRebalanceConfig(**values)


__all__ = [
    "BalanceSettings",
    "default_global_config",
    "default_rebalance_config",
    "effective_target_ratios",
    "get_balance_settings",
    "reset_balance_settings",
]
