"""Plan builders: decide what should move between splits.

Nothing here touches the filesystem except the ``plan_*`` helpers, which scan
the dataset first and then call the pure builders.
"""
from __future__ import annotations

import random
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from balancer.balance_analyzer import analyze_all_splits, collect_image_metadata
from balancer.balance_settings import default_global_config, default_rebalance_config
from balancer.balance_types import (
    BalanceStats,
    CategoryGroup,
    DatasetSplit,
    GlobalBalanceStats,
    ImageCategory,
    ImageMetadata,
    SplitRatios,
    TargetRatios,
    categories_in_group,
)
from balancer.log import info
from balancer.rebalance_types import (
    GlobalRebalanceConfig,
    GlobalRebalancePlan,
    MoveAction,
    RebalanceConfig,
    RebalancePlan,
)
from balancer.selection import largest_remainder, select_images


def calculate_move_count(stats: BalanceStats, category: ImageCategory, target_ratios: TargetRatios) -> int:
    """Signed distance from target: positive means excess, negative means deficit.

    Player categories are measured as the whole player group.
    """
    total = stats.total_images
    if total == 0:
        return 0
    group = category.group
    return stats.group_count(group) - round(total * target_ratios.ratio_for_group(group))


def calculate_rebalance_plan(
    stats: BalanceStats,
    target_ratios: TargetRatios,
    category: ImageCategory,
    from_split: DatasetSplit,
    to_split: DatasetSplit,
    config: Optional[RebalanceConfig] = None,
    metadata: Optional[Sequence[ImageMetadata]] = None,
    destination_stats: Optional[BalanceStats] = None,
) -> RebalancePlan:
    target_ratios.validate()
    if config is None:
        config = default_rebalance_config(
            target_ratios=target_ratios,
            source_split=from_split,
            destination_split=to_split,
            category=category,
        )
    if from_split is to_split:
        raise ValueError("Source and destination split must differ")
    if metadata is None:
        raise ValueError("Image metadata for the source split is required; use plan_split_rebalance to scan it")

    plan = RebalancePlan(
        category=category,
        from_split=from_split,
        to_split=to_split,
        current_stats=stats,
        projected_stats=stats,
        destination_stats=destination_stats,
        destination_projected_stats=destination_stats,
    )

    excess = max(0, calculate_move_count(stats, category, target_ratios))
    pool = [item for item in metadata if item.split is from_split]
    if config.preserve_ct_t_balance and category.is_player:
        pool = [item for item in pool if item.category.is_player]
    else:
        pool = [item for item in pool if item.category is category]

    count_to_move = min(excess, len(pool))
    info(
        f"{category.label} in {from_split.value}: excess {excess}, "
        f"{len(pool)} candidates, moving {count_to_move} to {to_split.value}"
    )
    if count_to_move == 0:
        return plan

    rng = random.Random(config.random_seed)
    chosen = select_images(
        config.selection_strategy,
        category,
        from_split,
        count_to_move,
        pool,
        preserve_ct_t_balance=config.preserve_ct_t_balance,
        rng=rng,
    )

    projected = stats
    projected_destination = destination_stats
    for item in chosen:
        plan.actions.append(MoveAction(
            image_path=item.path,
            label_path=item.label_path,
            category=item.category,
            from_split=from_split,
            to_split=to_split,
        ))
        projected = projected.with_delta(item.category, -1)
        if projected_destination is not None:
            projected_destination = projected_destination.with_delta(item.category, 1)

    plan.count_to_move = len(plan.actions)
    plan.projected_stats = projected
    plan.destination_projected_stats = projected_destination
    return plan


def find_best_destination_split(
    all_stats: GlobalBalanceStats,
    source_split: DatasetSplit,
    category: ImageCategory,
    target_ratios: TargetRatios,
) -> Optional[Tuple[DatasetSplit, int]]:
    """The other split that needs the most images of ``category``, and how many."""
    best: Optional[Tuple[DatasetSplit, int]] = None
    for split in DatasetSplit.ordered():
        if split is source_split:
            continue
        needed = -calculate_move_count(all_stats.get(split), category, target_ratios)
        if needed > 0 and (best is None or needed > best[1]):
            best = (split, needed)
    return best


def plan_split_rebalance(dataset_root: Path, config: Optional[RebalanceConfig] = None) -> RebalancePlan:
    config = config or default_rebalance_config()
    root = Path(dataset_root)
    source_meta = collect_image_metadata(root, config.source_split)
    destination_meta = collect_image_metadata(root, config.destination_split)
    return calculate_rebalance_plan(
        BalanceStats.from_categories(item.category for item in source_meta),
        config.target_ratios,
        config.category,
        config.source_split,
        config.destination_split,
        config=config,
        metadata=source_meta,
        destination_stats=BalanceStats.from_categories(item.category for item in destination_meta),
    )


def _group_excess(stats: BalanceStats, group: CategoryGroup, target: TargetRatios) -> int:
    if stats.total_images == 0:
        return 0
    return stats.group_count(group) - round(target.ratio_for_group(group) * stats.total_images)


def _outside_tolerance(stats: BalanceStats, group: CategoryGroup, target: TargetRatios, tolerance: float) -> bool:
    if stats.total_images == 0:
        return False
    return abs(stats.group_fraction(group) - target.ratio_for_group(group)) > tolerance


def _split_group_move(
    stats: BalanceStats,
    group: CategoryGroup,
    amount: int,
    preserve_ct_t_balance: bool,
) -> List[Tuple[ImageCategory, int]]:
    members = categories_in_group(group)
    if len(members) == 1:
        return [(members[0], amount)]

    available = [stats.get_count(member) for member in members]
    if preserve_ct_t_balance:
        shares = largest_remainder(amount, available)
        return [(member, share) for member, share in zip(members, shares) if share > 0]

    result: List[Tuple[ImageCategory, int]] = []
    remaining = amount
    for idx in sorted(range(len(members)), key=lambda i: (-available[i], i)):
        if remaining <= 0:
            break
        take = min(remaining, available[idx])
        if take > 0:
            result.append((members[idx], take))
            remaining -= take
    return result


def _total_deviation(stats: GlobalBalanceStats, target: TargetRatios, splits: Sequence[DatasetSplit]) -> float:
    total = 0.0
    for split in splits:
        split_stats = stats.get(split)
        if split_stats.total_images == 0:
            continue
        for group in CategoryGroup.ordered():
            diff = split_stats.group_fraction(group) - target.ratio_for_group(group)
            total += diff * diff
    return total


def _apply_group_move(
    stats: GlobalBalanceStats,
    source: DatasetSplit,
    destination: DatasetSplit,
    group: CategoryGroup,
    amount: int,
    preserve_ct_t_balance: bool,
) -> Tuple[GlobalBalanceStats, List[Tuple[ImageCategory, int]]]:
    parts = _split_group_move(stats.get(source), group, amount, preserve_ct_t_balance)
    for category, count in parts:
        stats = stats.with_move(source, destination, category, count)
    return stats, parts


def _next_global_move(
    stats: GlobalBalanceStats,
    config: GlobalRebalanceConfig,
) -> Optional[Tuple[DatasetSplit, DatasetSplit, CategoryGroup, int]]:
    splits = [split for split in DatasetSplit.ordered() if split in config.split_set]
    target = config.target_ratios
    current_deviation = _total_deviation(stats, target, splits)
    best: Optional[Tuple[float, int, DatasetSplit, DatasetSplit, CategoryGroup, int]] = None

    for source in splits:
        source_stats = stats.get(source)
        for group in CategoryGroup.ordered():
            excess = _group_excess(source_stats, group, target)
            available = source_stats.group_count(group)
            if excess <= 0 or available <= 0:
                continue
            destination: Optional[DatasetSplit] = None
            deficit = 0
            for candidate in splits:
                if candidate is source:
                    continue
                dest_stats = stats.get(candidate)
                needed = -_group_excess(dest_stats, group, target)
                if needed <= deficit:
                    continue
                if not (_outside_tolerance(source_stats, group, target, config.tolerance)
                        or _outside_tolerance(dest_stats, group, target, config.tolerance)):
                    continue
                destination, deficit = candidate, needed
            if destination is None:
                continue

            amount = min(excess, deficit, available)
            moved, _ = _apply_group_move(stats, source, destination, group, amount, config.preserve_ct_t_balance)
            improvement = current_deviation - _total_deviation(moved, target, splits)
            if improvement <= 1e-12:
                continue
            # strict comparison keeps the earliest split/group on ties
            if best is None or (improvement, excess) > (best[0], best[1]):
                best = (improvement, excess, source, destination, group, amount)

    if best is None:
        return None
    _, _, source, destination, group, amount = best
    return source, destination, group, amount


def calculate_global_rebalance_plan(
    all_splits_stats: GlobalBalanceStats,
    target_ratios: Optional[TargetRatios] = None,
    config: Optional[GlobalRebalanceConfig] = None,
) -> GlobalRebalancePlan:
    """Greedy multi-split plan over category groups.

    Each source split and group with excess is paired with the split that has
    the largest deficit for that group; the pairing that most reduces the total
    squared deviation from target is applied. Stops once every split is within
    tolerance, no move improves the balance, or ``max_iterations`` is reached.
    Identical inputs always give identical plans.
    """
    if config is None:
        config = default_global_config(target_ratios=target_ratios)
    elif target_ratios is not None and target_ratios != config.target_ratios:
        config = replace(config, target_ratios=target_ratios)
    config.target_ratios.validate()

    plan = GlobalRebalancePlan(current_stats=all_splits_stats, projected_stats=all_splits_stats)
    if all_splits_stats.is_balanced(config.target_ratios, config.tolerance, config.splits):
        info(f"Splits already balanced within {config.tolerance * 100:.0f}% tolerance")
        return plan

    projected = all_splits_stats
    iterations = 0
    while iterations < config.max_iterations:
        if projected.is_balanced(config.target_ratios, config.tolerance, config.splits):
            break
        move = _next_global_move(projected, config)
        if move is None:
            break
        source, destination, group, amount = move
        projected, parts = _apply_group_move(
            projected, source, destination, group, amount, config.preserve_ct_t_balance
        )
        for category, count in parts:
            plan.add(source, destination, category, count)
        iterations += 1

    plan.iterations_used = iterations
    plan.projected_stats = projected
    info(
        f"Global rebalance plan: {plan.total_moves} moves in {len(plan.moves)} groups, "
        f"{plan.iterations_used} iterations"
    )
    return plan


def _target_sizes(total: int, split_ratios: SplitRatios, splits: Sequence[DatasetSplit]) -> Dict[DatasetSplit, int]:
    weights = [split_ratios.get(split) for split in splits]
    weight_sum = sum(weights)
    if weight_sum <= 0:
        return {split: 0 for split in splits}
    exact = [total * weight / weight_sum for weight in weights]
    sizes = [int(value) for value in exact]
    leftover = total - sum(sizes)
    for idx in sorted(range(len(splits)), key=lambda i: (-(exact[i] - sizes[i]), i))[:leftover]:
        sizes[idx] += 1
    return dict(zip(splits, sizes))


def _favor_missing_team(
    shares: Dict[ImageCategory, int],
    source: BalanceStats,
    destination: BalanceStats,
    ct_t_ratio: float,
) -> Dict[ImageCategory, int]:
    """Re-split the CT/T part of a transfer toward ``ct_t_ratio`` in the destination.

    The team total stays the same; only what the source actually holds can be taken.
    """
    team = shares[ImageCategory.CT_ONLY] + shares[ImageCategory.T_ONLY]
    if team == 0:
        return shares
    wanted_ct = round(ct_t_ratio * (destination.ct_only + destination.t_only + team)) - destination.ct_only
    low = max(0, team - source.t_only)
    high = min(team, source.ct_only)
    ct_take = min(high, max(low, wanted_ct))
    result = dict(shares)
    result[ImageCategory.CT_ONLY] = ct_take
    result[ImageCategory.T_ONLY] = team - ct_take
    return result


def calculate_split_size_plan(
    all_splits_stats: GlobalBalanceStats,
    split_ratios: Optional[SplitRatios] = None,
    config: Optional[GlobalRebalanceConfig] = None,
) -> GlobalRebalancePlan:
    """Move images so split sizes approach ``split_ratios`` (e.g. 70/20/10).

    Every transfer takes categories in proportion to the source split, so the
    category balance travels with the images. Within that, the CT/T part leans
    toward whichever team the destination is short of (``config.ct_t_ratio``).
    """
    config = config or default_global_config()
    split_ratios = (split_ratios or config.split_ratios).validate()
    splits = [split for split in DatasetSplit.ordered() if split in config.split_set]

    plan = GlobalRebalancePlan(current_stats=all_splits_stats, projected_stats=all_splits_stats)
    total = sum(all_splits_stats.get(split).total_images for split in splits)
    if total == 0:
        info("No images found in dataset")
        return plan

    targets = _target_sizes(total, split_ratios, splits)
    tolerance_count = int(total * config.tolerance)
    info(
        "Split balancing: total=" + str(total) + ", targets "
        + ", ".join(f"{split.value}={targets[split]}" for split in splits)
    )

    projected = all_splits_stats
    iterations = 0
    while iterations < config.max_iterations:
        excess = {split: projected.get(split).total_images - targets[split] for split in splits}
        over = [split for split in splits if excess[split] > tolerance_count]
        under = [split for split in splits if excess[split] < -tolerance_count]
        if not over or not under:
            break
        source = max(over, key=lambda split: (excess[split], -split.order))
        destination = min(under, key=lambda split: (excess[split], split.order))
        amount = min(excess[source], -excess[destination])

        source_stats = projected.get(source)
        categories = ImageCategory.ordered()
        shares = dict(zip(
            categories,
            largest_remainder(amount, [source_stats.get_count(category) for category in categories]),
        ))
        if sum(shares.values()) == 0:
            break
        shares = _favor_missing_team(shares, source_stats, projected.get(destination), config.ct_t_ratio)
        for category in categories:
            share = shares[category]
            if share > 0:
                projected = projected.with_move(source, destination, category, share)
                plan.add(source, destination, category, share)
        iterations += 1

    plan.iterations_used = iterations
    plan.projected_stats = projected
    info(f"Split size plan: {plan.total_moves} moves in {len(plan.moves)} groups")
    return plan


def plan_global_rebalance(dataset_root: Path, config: Optional[GlobalRebalanceConfig] = None) -> GlobalRebalancePlan:
    config = config or default_global_config()
    stats = analyze_all_splits(Path(dataset_root), config.splits)
    return calculate_global_rebalance_plan(stats, config=config)


def plan_split_sizes(dataset_root: Path, config: Optional[GlobalRebalanceConfig] = None) -> GlobalRebalancePlan:
    config = config or default_global_config()
    stats = analyze_all_splits(Path(dataset_root), config.splits)
    return calculate_split_size_plan(stats, config=config)


__all__ = [
    "calculate_global_rebalance_plan",
    "calculate_move_count",
    "calculate_rebalance_plan",
    "calculate_split_size_plan",
    "find_best_destination_split",
    "plan_global_rebalance",
    "plan_split_rebalance",
    "plan_split_sizes",
]
