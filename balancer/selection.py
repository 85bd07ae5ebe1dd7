"""Choose which concrete images fulfil a move count.

Timestamps are read from the filename first. Recognized forms are a 10-digit
epoch in seconds, a 13-digit epoch in milliseconds, and ``YYYYMMDD_HHMMSS`` /
``YYYYMMDD-HHMMSS``. Images whose timestamp cannot be determined sort after
all dated images for both oldest-first and newest-first.
"""
from __future__ import annotations

import random
import re
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from balancer.balance_types import PLAYER_CATEGORIES, DatasetSplit, ImageCategory, ImageMetadata
from balancer.log import debug
from balancer.rebalance_types import SelectionStrategy

_EPOCH_MS_RE = re.compile(r"(?<!\d)(\d{13})(?!\d)")
_EPOCH_S_RE = re.compile(r"(?<!\d)(\d{10})(?!\d)")
_DATETIME_RE = re.compile(r"(?<!\d)(\d{8})[_-](\d{6})(?!\d)")


def parse_filename_timestamp(filename: str) -> Optional[float]:
    """Return the capture time encoded in ``filename`` as epoch seconds."""
    match = _DATETIME_RE.search(filename)
    if match:
        try:
            parsed = datetime.strptime(match.group(1) + match.group(2), "%Y%m%d%H%M%S")
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed.replace(tzinfo=timezone.utc).timestamp()

    match = _EPOCH_MS_RE.search(filename)
    if match:
        return int(match.group(1)) / 1000.0

    match = _EPOCH_S_RE.search(filename)
    if match:
        return float(match.group(1))
    return None


def parse_header_timestamp(value: Optional[str]) -> Optional[float]:
    """Interpret a label ``Time:`` header (epoch seconds or milliseconds)."""
    if not value:
        return None
    text = value.strip()
    if not text.isdigit():
        return None
    number = int(text)
    if len(text) >= 13:
        return number / 1000.0
    return float(number)


def largest_remainder(total: int, weights: Sequence[int]) -> List[int]:
    """Split ``total`` into integer shares proportional to ``weights``.

    Shares never exceed their weight, and leftover units go to the largest
    fractional remainders (earlier positions win ties).
    """
    weight_sum = sum(weights)
    if total <= 0 or weight_sum <= 0:
        return [0 for _ in weights]
    total = min(total, weight_sum)
    exact = [total * weight / weight_sum for weight in weights]
    shares = [int(value) for value in exact]
    leftover = total - sum(shares)
    order = sorted(range(len(weights)), key=lambda idx: (-(exact[idx] - shares[idx]), idx))
    for idx in order:
        if leftover <= 0:
            break
        if shares[idx] < weights[idx]:
            shares[idx] += 1
            leftover -= 1
    # Capped strata can leave units unassigned; hand them to anyone with room.
    idx = 0
    while leftover > 0 and idx < len(weights):
        room = weights[idx] - shares[idx]
        if room > 0:
            extra = min(room, leftover)
            shares[idx] += extra
            leftover -= extra
        idx += 1
    return shares


def _timestamp_of(item: ImageMetadata) -> Optional[float]:
    timestamp = parse_filename_timestamp(item.filename)
    if timestamp is None:
        timestamp = item.timestamp
    return timestamp


def order_pool(
    strategy: SelectionStrategy,
    pool: Iterable[ImageMetadata],
    rng: Optional[random.Random] = None,
) -> List[ImageMetadata]:
    items = list(pool)
    if strategy is SelectionStrategy.RANDOM:
        (rng or random.Random()).shuffle(items)
        return items

    if strategy is SelectionStrategy.FEWEST_DETECTIONS:
        return sorted(
            items,
            key=lambda item: (item.detection_count is None, item.detection_count or 0),
        )

    dated: List[Tuple[float, ImageMetadata]] = []
    undated: List[ImageMetadata] = []
    for item in items:
        timestamp = _timestamp_of(item)
        if timestamp is None:
            undated.append(item)
        else:
            dated.append((timestamp, item))
    newest = strategy is SelectionStrategy.NEWEST_FIRST
    dated.sort(key=lambda pair: pair[0], reverse=newest)
    return [item for _, item in dated] + undated


def select_images(
    strategy: SelectionStrategy,
    category: ImageCategory,
    split: DatasetSplit,
    count: int,
    metadata_pool: Iterable[ImageMetadata],
    *,
    preserve_ct_t_balance: bool = False,
    rng: Optional[random.Random] = None,
) -> List[ImageMetadata]:
    """Pick up to ``count`` images of ``category`` from ``split``.

    With ``preserve_ct_t_balance`` and a player category, the candidates are
    every player image in the split and the result is a stratified sample
    whose CT/T/multiple proportions follow the pool.
    """
    if count <= 0:
        return []

    stratified = preserve_ct_t_balance and category.is_player
    allowed = PLAYER_CATEGORIES if stratified else (category,)
    candidates = [item for item in metadata_pool if item.split is split and item.category in allowed]
    if not candidates:
        return []

    if not stratified:
        return order_pool(strategy, candidates, rng)[:count]

    strata: Dict[ImageCategory, List[ImageMetadata]] = {member: [] for member in PLAYER_CATEGORIES}
    for item in candidates:
        strata[item.category].append(item)
    quotas = largest_remainder(count, [len(strata[member]) for member in PLAYER_CATEGORIES])
    debug(
        "Stratified selection quotas: "
        + ", ".join(f"{member.label}={quota}" for member, quota in zip(PLAYER_CATEGORIES, quotas))
    )

    chosen: List[ImageMetadata] = []
    for member, quota in zip(PLAYER_CATEGORIES, quotas):
        if quota:
            chosen.extend(order_pool(strategy, strata[member], rng)[:quota])
    return chosen


__all__ = [
    "largest_remainder",
    "order_pool",
    "parse_filename_timestamp",
    "parse_header_timestamp",
    "select_images",
]
