import random
from datetime import datetime, timezone
from pathlib import Path

import pytest

from balancer.balance_types import DatasetSplit, ImageCategory, ImageMetadata
from balancer.rebalance_types import SelectionStrategy
from balancer.selection import largest_remainder, parse_filename_timestamp, select_images


def _meta(name, category=ImageCategory.BACKGROUND, split=DatasetSplit.TRAIN, detections=None, timestamp=None):
    return ImageMetadata(
        path=Path(f"/ds/{split.value}/images/{name}"),
        category=category,
        split=split,
        detection_count=detections,
        timestamp=timestamp,
    )


class TestTimestamps:
    def test_epoch_seconds(self):
        assert parse_filename_timestamp("capture_1764637338.png") == 1764637338.0

    def test_epoch_milliseconds(self):
        assert parse_filename_timestamp("1764637338123.jpg") == pytest.approx(1764637338.123)

    @pytest.mark.parametrize("name", ["shot_20240131_235959.png", "shot_20240131-235959.png"])
    def test_datetime_forms(self, name):
        expected = datetime(2024, 1, 31, 23, 59, 59, tzinfo=timezone.utc).timestamp()
        assert parse_filename_timestamp(name) == expected

    def test_unparsable(self):
        assert parse_filename_timestamp("frame_42.png") is None
        assert parse_filename_timestamp("20241399_999999.png") is None


class TestLargestRemainder:
    def test_shares_sum_to_total(self):
        assert largest_remainder(10, [5, 3, 2]) == [5, 3, 2]
        shares = largest_remainder(7, [50, 30, 20])
        assert sum(shares) == 7
        assert shares == [4, 2, 1]

    def test_shares_capped_by_weight(self):
        assert largest_remainder(10, [1, 0, 2]) == [1, 0, 2]

    def test_zero_total(self):
        assert largest_remainder(0, [3, 4]) == [0, 0]


class TestSelectImages:
    def test_never_more_than_requested_or_available(self):
        pool = [_meta(f"bg_{i}.png") for i in range(5)]
        assert len(select_images(SelectionStrategy.RANDOM, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 3, pool)) == 3
        assert len(select_images(SelectionStrategy.RANDOM, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 9, pool)) == 5
        assert select_images(SelectionStrategy.RANDOM, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 0, pool) == []

    def test_filters_split_and_category(self):
        pool = [
            _meta("a.png"),
            _meta("b.png", category=ImageCategory.CT_ONLY),
            _meta("c.png", split=DatasetSplit.VAL),
        ]
        chosen = select_images(SelectionStrategy.RANDOM, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 5, pool)
        assert [item.filename for item in chosen] == ["a.png"]

    def test_random_is_reproducible_with_seed(self):
        pool = [_meta(f"bg_{i}.png") for i in range(20)]
        first = select_images(SelectionStrategy.RANDOM, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 5, pool,
                              rng=random.Random(7))
        second = select_images(SelectionStrategy.RANDOM, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 5, pool,
                               rng=random.Random(7))
        assert first == second

    def test_fewest_detections_is_stable_with_unknown_last(self):
        pool = [
            _meta("unknown.png", detections=None),
            _meta("three.png", detections=3),
            _meta("one_a.png", detections=1),
            _meta("one_b.png", detections=1),
        ]
        chosen = select_images(SelectionStrategy.FEWEST_DETECTIONS, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 4, pool)
        assert [item.filename for item in chosen] == ["one_a.png", "one_b.png", "three.png", "unknown.png"]

    def test_oldest_and_newest_put_undated_last(self):
        pool = [
            _meta("nodate.png"),
            _meta("b_1700000200.png"),
            _meta("a_1700000100.png"),
            _meta("header.png", timestamp=1700000150.0),
        ]
        oldest = select_images(SelectionStrategy.OLDEST_FIRST, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 4, pool)
        newest = select_images(SelectionStrategy.NEWEST_FIRST, ImageCategory.BACKGROUND, DatasetSplit.TRAIN, 4, pool)
        assert [item.filename for item in oldest] == ["a_1700000100.png", "header.png", "b_1700000200.png", "nodate.png"]
        assert [item.filename for item in newest] == ["b_1700000200.png", "header.png", "a_1700000100.png", "nodate.png"]

    def test_preserve_balance_stratifies_player_pool(self):
        pool = (
            [_meta(f"ct_{i}.png", category=ImageCategory.CT_ONLY) for i in range(60)]
            + [_meta(f"t_{i}.png", category=ImageCategory.T_ONLY) for i in range(30)]
            + [_meta(f"m_{i}.png", category=ImageCategory.MULTIPLE_PLAYER) for i in range(10)]
            + [_meta(f"bg_{i}.png") for i in range(10)]
        )
        chosen = select_images(
            SelectionStrategy.RANDOM,
            ImageCategory.CT_ONLY,
            DatasetSplit.TRAIN,
            10,
            pool,
            preserve_ct_t_balance=True,
            rng=random.Random(1),
        )
        categories = [item.category for item in chosen]
        assert categories.count(ImageCategory.CT_ONLY) == 6
        assert categories.count(ImageCategory.T_ONLY) == 3
        assert categories.count(ImageCategory.MULTIPLE_PLAYER) == 1
        assert ImageCategory.BACKGROUND not in categories
