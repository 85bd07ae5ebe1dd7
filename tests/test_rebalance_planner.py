from pathlib import Path

import pytest

from balancer.balance_types import (
    BalanceStats,
    DatasetSplit,
    GlobalBalanceStats,
    ImageCategory,
    ImageMetadata,
    InvalidRatiosError,
    SplitRatios,
    TargetRatios,
)
from balancer.rebalance_planner import (
    calculate_global_rebalance_plan,
    calculate_move_count,
    calculate_rebalance_plan,
    calculate_split_size_plan,
    find_best_destination_split,
    plan_global_rebalance,
    plan_split_rebalance,
)
from balancer.rebalance_types import GlobalMoveGroup, GlobalRebalanceConfig, RebalanceConfig

NO_HARD_CASE = TargetRatios(player_ratio=0.9, background_ratio=0.1, hardcase_ratio=0.0)


def _pool(split, counts):
    items = []
    for category, count in counts.items():
        for idx in range(count):
            items.append(ImageMetadata(
                path=Path(f"/ds/{split.value}/images/{category.value}_{idx}.png"),
                category=category,
                split=split,
            ))
    return items


class TestMoveCount:
    def test_background_excess_and_deficit(self):
        stats = BalanceStats(ct_only=100, background=900)
        assert calculate_move_count(stats, ImageCategory.BACKGROUND, TargetRatios()) == 800
        assert calculate_move_count(BalanceStats(ct_only=100), ImageCategory.BACKGROUND, TargetRatios()) == -10

    def test_player_categories_measure_the_whole_group(self):
        stats = BalanceStats(ct_only=600, t_only=300, multiple_player=100)
        assert calculate_move_count(stats, ImageCategory.T_ONLY, TargetRatios()) == 150
        assert calculate_move_count(stats, ImageCategory.CT_ONLY, TargetRatios()) == 150

    def test_empty_stats(self):
        assert calculate_move_count(BalanceStats(), ImageCategory.BACKGROUND, TargetRatios()) == 0


class TestSingleSplitPlan:
    def test_excess_background_moves_to_target(self):
        stats = BalanceStats(ct_only=100, background=900)
        pool = _pool(DatasetSplit.TRAIN, {ImageCategory.BACKGROUND: 900, ImageCategory.CT_ONLY: 100})

        plan = calculate_rebalance_plan(
            stats,
            TargetRatios(),
            ImageCategory.BACKGROUND,
            DatasetSplit.TRAIN,
            DatasetSplit.VAL,
            config=RebalanceConfig(random_seed=3),
            metadata=pool,
            destination_stats=BalanceStats(),
        )

        assert plan.count_to_move == 800
        assert len(plan.actions) == 800
        assert all(action.category is ImageCategory.BACKGROUND for action in plan.actions)
        assert all(action.to_split is DatasetSplit.VAL for action in plan.actions)
        assert len({action.image_path for action in plan.actions}) == 800
        assert plan.projected_stats == BalanceStats(ct_only=100, background=100)
        assert plan.destination_projected_stats == BalanceStats(background=800)

    def test_balanced_split_gives_empty_plan(self):
        stats = BalanceStats(ct_only=85, background=10, hard_case=5)
        pool = _pool(DatasetSplit.TRAIN, {ImageCategory.BACKGROUND: 10})
        plan = calculate_rebalance_plan(
            stats, TargetRatios(), ImageCategory.BACKGROUND, DatasetSplit.TRAIN, DatasetSplit.TEST,
            config=RebalanceConfig(), metadata=pool,
        )
        assert plan.is_empty()
        assert plan.count_to_move == 0
        assert plan.projected_stats == stats

    def test_count_limited_by_candidates(self):
        stats = BalanceStats(ct_only=100, background=900)
        pool = _pool(DatasetSplit.TRAIN, {ImageCategory.BACKGROUND: 30})
        plan = calculate_rebalance_plan(
            stats, TargetRatios(), ImageCategory.BACKGROUND, DatasetSplit.TRAIN, DatasetSplit.VAL,
            config=RebalanceConfig(), metadata=pool,
        )
        assert plan.count_to_move == 30

    def test_same_split_is_rejected(self):
        with pytest.raises(ValueError):
            calculate_rebalance_plan(
                BalanceStats(background=10), TargetRatios(), ImageCategory.BACKGROUND,
                DatasetSplit.TRAIN, DatasetSplit.TRAIN, config=RebalanceConfig(),
            )

    def test_missing_metadata_is_rejected(self):
        with pytest.raises(ValueError, match="metadata"):
            calculate_rebalance_plan(
                BalanceStats(ct_only=100, background=900), TargetRatios(), ImageCategory.BACKGROUND,
                DatasetSplit.TRAIN, DatasetSplit.VAL, config=RebalanceConfig(),
            )

    def test_invalid_ratios_are_rejected(self):
        with pytest.raises(InvalidRatiosError):
            calculate_rebalance_plan(
                BalanceStats(background=10),
                TargetRatios(player_ratio=0.9, background_ratio=0.9, hardcase_ratio=0.0),
                ImageCategory.BACKGROUND,
                DatasetSplit.TRAIN,
                DatasetSplit.VAL,
            )

    def test_player_plan_keeps_team_mix(self):
        stats = BalanceStats(ct_only=600, t_only=300, multiple_player=100)
        pool = _pool(DatasetSplit.TRAIN, {
            ImageCategory.CT_ONLY: 600,
            ImageCategory.T_ONLY: 300,
            ImageCategory.MULTIPLE_PLAYER: 100,
        })
        plan = calculate_rebalance_plan(
            stats, TargetRatios(), ImageCategory.CT_ONLY, DatasetSplit.TRAIN, DatasetSplit.VAL,
            config=RebalanceConfig(category=ImageCategory.CT_ONLY, preserve_ct_t_balance=True, random_seed=1),
            metadata=pool,
            destination_stats=BalanceStats(),
        )
        assert plan.count_to_move == 150
        assert plan.projected_stats == BalanceStats(ct_only=510, t_only=255, multiple_player=85)
        assert plan.destination_projected_stats == BalanceStats(ct_only=90, t_only=45, multiple_player=15)

    def test_player_plan_without_balance_uses_only_requested_category(self):
        stats = BalanceStats(ct_only=600, t_only=300, multiple_player=100)
        pool = _pool(DatasetSplit.TRAIN, {ImageCategory.CT_ONLY: 600, ImageCategory.T_ONLY: 300})
        plan = calculate_rebalance_plan(
            stats, TargetRatios(), ImageCategory.T_ONLY, DatasetSplit.TRAIN, DatasetSplit.VAL,
            config=RebalanceConfig(category=ImageCategory.T_ONLY, preserve_ct_t_balance=False, random_seed=1),
            metadata=pool,
        )
        assert plan.count_to_move == 150
        assert {action.category for action in plan.actions} == {ImageCategory.T_ONLY}

    def test_plan_from_dataset(self, dataset):
        dataset.populate({
            DatasetSplit.TRAIN: {ImageCategory.CT_ONLY: 6, ImageCategory.BACKGROUND: 4},
            DatasetSplit.VAL: {ImageCategory.CT_ONLY: 3},
        })
        plan = plan_split_rebalance(dataset.root, RebalanceConfig(random_seed=5))

        assert plan.count_to_move == 3
        assert all(action.label_path is None for action in plan.actions)
        assert all(action.image_path.parent == dataset.root / "train" / "images" for action in plan.actions)
        assert plan.destination_stats == BalanceStats(ct_only=3)
        assert plan.destination_projected_stats == BalanceStats(ct_only=3, background=3)


class TestBestDestination:
    def test_picks_largest_deficit(self):
        stats = GlobalBalanceStats(
            train=BalanceStats(ct_only=100, background=900),
            val=BalanceStats(ct_only=100),
            test=BalanceStats(ct_only=50),
        )
        assert find_best_destination_split(stats, DatasetSplit.TRAIN, ImageCategory.BACKGROUND, TargetRatios()) == (
            DatasetSplit.VAL, 10
        )

    def test_none_when_nobody_needs_more(self):
        stats = GlobalBalanceStats(
            train=BalanceStats(ct_only=100, background=900),
            val=BalanceStats(background=50),
        )
        assert find_best_destination_split(stats, DatasetSplit.VAL, ImageCategory.BACKGROUND, TargetRatios()) is None


class TestGlobalPlan:
    def _skewed(self):
        return GlobalBalanceStats(
            train=BalanceStats(ct_only=400, t_only=400, background=200),
            val=BalanceStats(ct_only=300, t_only=300),
            test=BalanceStats(ct_only=200, t_only=200),
        )

    def test_already_balanced_is_a_no_op(self):
        stats = GlobalBalanceStats(
            train=BalanceStats(ct_only=85, background=10, hard_case=5),
            val=BalanceStats(ct_only=17, background=2, hard_case=1),
            test=BalanceStats(ct_only=17, background=2, hard_case=1),
        )
        plan = calculate_global_rebalance_plan(stats, TargetRatios(), GlobalRebalanceConfig())
        assert plan.total_moves == 0
        assert plan.iterations_used == 0
        assert plan.projected_stats == stats

    def test_surplus_background_is_shared_between_val_and_test(self):
        plan = calculate_global_rebalance_plan(self._skewed(), NO_HARD_CASE, GlobalRebalanceConfig())

        assert plan.moves == [
            GlobalMoveGroup(DatasetSplit.TRAIN, DatasetSplit.VAL, ImageCategory.BACKGROUND, 60),
            GlobalMoveGroup(DatasetSplit.TRAIN, DatasetSplit.TEST, ImageCategory.BACKGROUND, 40),
        ]
        assert plan.iterations_used == 2
        assert plan.projected_stats.is_balanced(NO_HARD_CASE, 0.02)
        assert plan.projected_stats.total_images == self._skewed().total_images

    def test_iteration_cap(self):
        plan = calculate_global_rebalance_plan(
            self._skewed(), NO_HARD_CASE, GlobalRebalanceConfig(max_iterations=1)
        )
        assert plan.iterations_used == 1
        assert plan.moves == [GlobalMoveGroup(DatasetSplit.TRAIN, DatasetSplit.VAL, ImageCategory.BACKGROUND, 60)]

    def test_identical_input_gives_identical_plan(self):
        first = calculate_global_rebalance_plan(self._skewed(), NO_HARD_CASE, GlobalRebalanceConfig())
        second = calculate_global_rebalance_plan(self._skewed(), NO_HARD_CASE, GlobalRebalanceConfig())
        assert first.moves == second.moves
        assert first.projected_stats == second.projected_stats

    def test_player_only_split_is_filled_instead_of_drained(self):
        stats = GlobalBalanceStats(
            train=BalanceStats(ct_only=600, t_only=300),
            val=BalanceStats(background=100),
        )
        plan = calculate_global_rebalance_plan(
            stats, NO_HARD_CASE, GlobalRebalanceConfig(splits=(DatasetSplit.TRAIN, DatasetSplit.VAL))
        )
        projected = plan.projected_stats
        assert projected.train.total_images > 700
        assert projected.train.background > 0
        assert projected.total_images == stats.total_images

    def _player_surplus(self):
        return GlobalBalanceStats(
            train=BalanceStats(ct_only=600, t_only=300, background=100),
            val=BalanceStats(ct_only=200, t_only=100),
            test=BalanceStats(ct_only=30, background=70),
        )

    def test_preserved_balance_splits_players_proportionally(self):
        plan = calculate_global_rebalance_plan(
            self._player_surplus(), NO_HARD_CASE, GlobalRebalanceConfig(max_iterations=1)
        )
        assert plan.moves == [
            GlobalMoveGroup(DatasetSplit.VAL, DatasetSplit.TEST, ImageCategory.CT_ONLY, 20),
            GlobalMoveGroup(DatasetSplit.VAL, DatasetSplit.TEST, ImageCategory.T_ONLY, 10),
        ]

    def test_unpreserved_balance_takes_most_abundant_first(self):
        plan = calculate_global_rebalance_plan(
            self._player_surplus(),
            NO_HARD_CASE,
            GlobalRebalanceConfig(max_iterations=1, preserve_ct_t_balance=False),
        )
        assert plan.moves == [GlobalMoveGroup(DatasetSplit.VAL, DatasetSplit.TEST, ImageCategory.CT_ONLY, 30)]

    def test_empty_splits_do_not_participate(self):
        stats = GlobalBalanceStats(train=BalanceStats(ct_only=90, background=10))
        plan = calculate_global_rebalance_plan(stats, NO_HARD_CASE, GlobalRebalanceConfig())
        assert plan.total_moves == 0

    def test_plan_from_dataset(self, dataset):
        dataset.populate({
            DatasetSplit.TRAIN: {ImageCategory.CT_ONLY: 8, ImageCategory.BACKGROUND: 4},
            DatasetSplit.VAL: {ImageCategory.CT_ONLY: 9},
        })
        plan = plan_global_rebalance(dataset.root, GlobalRebalanceConfig(target_ratios=NO_HARD_CASE, tolerance=0.05))
        assert plan.current_stats.train == BalanceStats(ct_only=8, background=4)
        assert plan.total_moves > 0
        assert all(group.category is ImageCategory.BACKGROUND for group in plan.moves)


class TestSplitSizePlan:
    def test_moves_toward_split_ratios(self):
        stats = GlobalBalanceStats(
            train=BalanceStats(background=50),
            val=BalanceStats(background=30),
            test=BalanceStats(background=20),
        )
        plan = calculate_split_size_plan(stats, SplitRatios(0.7, 0.2, 0.1), GlobalRebalanceConfig())

        assert plan.moves == [
            GlobalMoveGroup(DatasetSplit.VAL, DatasetSplit.TRAIN, ImageCategory.BACKGROUND, 10),
            GlobalMoveGroup(DatasetSplit.TEST, DatasetSplit.TRAIN, ImageCategory.BACKGROUND, 10),
        ]
        sizes = [plan.projected_stats.get(split).total_images for split in DatasetSplit.ordered()]
        assert sizes == [70, 20, 10]

    def test_category_mix_travels_with_the_images(self):
        stats = GlobalBalanceStats(train=BalanceStats(ct_only=60, background=40))
        plan = calculate_split_size_plan(stats, SplitRatios(0.5, 0.3, 0.2), GlobalRebalanceConfig())

        assert plan.projected_stats.val == BalanceStats(ct_only=18, background=12)
        assert plan.projected_stats.test == BalanceStats(ct_only=12, background=8)
        assert plan.projected_stats.train.total_images == 50

    def test_within_tolerance_is_a_no_op(self):
        stats = GlobalBalanceStats(
            train=BalanceStats(background=71),
            val=BalanceStats(background=19),
            test=BalanceStats(background=10),
        )
        plan = calculate_split_size_plan(stats, SplitRatios(), GlobalRebalanceConfig())
        assert plan.total_moves == 0

    def test_empty_dataset(self):
        plan = calculate_split_size_plan(GlobalBalanceStats(), SplitRatios(), GlobalRebalanceConfig())
        assert plan.is_empty()

    def test_invalid_split_ratios(self):
        with pytest.raises(InvalidRatiosError):
            calculate_split_size_plan(GlobalBalanceStats(), SplitRatios(0.9, 0.9, 0.1), GlobalRebalanceConfig())

    @pytest.mark.parametrize("val, expected", [
        (BalanceStats(t_only=20), (13, 20)),
        (BalanceStats(ct_only=20), (20, 13)),
    ])
    def test_transfers_lean_toward_the_missing_team(self, val, expected):
        stats = GlobalBalanceStats(
            train=BalanceStats(ct_only=40, t_only=40, background=20),
            val=val,
        )
        plan = calculate_split_size_plan(stats, SplitRatios(0.6, 0.3, 0.1), GlobalRebalanceConfig())

        projected_val = plan.projected_stats.val
        assert (projected_val.ct_only, projected_val.t_only) == expected
        sizes = [plan.projected_stats.get(split).total_images for split in DatasetSplit.ordered()]
        assert sizes == [72, 36, 12]

    def test_team_bias_is_limited_by_the_source(self):
        stats = GlobalBalanceStats(
            train=BalanceStats(ct_only=10, t_only=70, background=20),
            val=BalanceStats(t_only=20),
        )
        plan = calculate_split_size_plan(stats, SplitRatios(0.6, 0.3, 0.1), GlobalRebalanceConfig())

        assert plan.projected_stats.val.ct_only == 10
        assert plan.projected_stats.train.ct_only == 0
