from __future__ import annotations

import queue
import threading
from itertools import combinations
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from PIL import Image

from balancer.balance_settings import get_balance_settings
from balancer.balance_types import (
    BalanceStats,
    CategoryGroup,
    ClassMap,
    DatasetSplit,
    GlobalBalanceStats,
    HardCaseRule,
    ImageCategory,
    ImageMetadata,
    IntegrityIssue,
    IntegrityIssueType,
    IntegrityStats,
    TargetRatios,
    split_images_dir,
    split_labels_dir,
)
from balancer.label_parser import (
    LABEL_EXTENSION,
    LabelInfo,
    YoloDetection,
    label_path_for_image,
    parse_label_file,
)
from balancer.log import info, warning
from balancer.progress import (
    AnalysisCancelled,
    AnalysisComplete,
    AnalysisProgress,
    IntegrityCancelled,
    IntegrityComplete,
    IntegrityProgress,
)
from balancer.selection import parse_filename_timestamp, parse_header_timestamp

LabelResolver = Callable[[Path], Optional[Path]]

# Player-excess hint: one team is called out once it leads by this many images.
TEAM_IMBALANCE_HINT = 100


def _iou(first: YoloDetection, second: YoloDetection) -> float:
    ax1, ay1, ax2, ay2 = first.bounds()
    bx1, by1, bx2, by2 = second.bounds()
    inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
    intersection = inter_w * inter_h
    union = first.area + second.area - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def is_hard_case(detections: Sequence[YoloDetection], rule: HardCaseRule) -> bool:
    if not rule.enabled or not detections:
        return False
    if rule.min_box_area > 0 and any(det.area < rule.min_box_area for det in detections):
        return True
    if rule.min_overlapping_pairs > 0:
        overlapping = sum(
            1 for first, second in combinations(detections, 2)
            if _iou(first, second) >= rule.overlap_iou
        )
        if overlapping >= rule.min_overlapping_pairs:
            return True
    return False


def categorize(
    label: Optional[LabelInfo],
    *,
    class_map: Optional[ClassMap] = None,
    hard_case: Optional[HardCaseRule] = None,
) -> ImageCategory:
    """Assign exactly one category to an image from its parsed label.

    No label or no detections means background. Detections that belong to
    neither team are ignored for the team decision.
    """
    if label is None or not label.detections:
        return ImageCategory.BACKGROUND

    if class_map is None or hard_case is None:
        settings = get_balance_settings()
        class_map = class_map or settings.class_map
        hard_case = hard_case or settings.hard_case

    if is_hard_case(label.detections, hard_case):
        return ImageCategory.HARD_CASE

    has_t = any(det.class_id == class_map.t for det in label.detections)
    has_ct = any(det.class_id == class_map.ct for det in label.detections)
    if has_t and has_ct:
        return ImageCategory.MULTIPLE_PLAYER
    if has_ct:
        return ImageCategory.CT_ONLY
    if has_t:
        return ImageCategory.T_ONLY
    return ImageCategory.BACKGROUND


def categorize_image(label_path: Optional[Path], **kwargs) -> ImageCategory:
    return categorize(parse_label_file(label_path), **kwargs)


def list_split_images(
    dataset_root: Path,
    split: DatasetSplit,
    extensions: Optional[Iterable[str]] = None,
) -> Optional[List[Path]]:
    """Sorted image files of ``<root>/<split>/images``, or ``None`` if unreadable."""
    allowed = {ext.lower() for ext in (extensions or get_balance_settings().image_extensions)}
    images_dir = split_images_dir(dataset_root, split)
    try:
        entries = list(images_dir.iterdir())
    except OSError as exc:
        warning(f"Failed to read directory {images_dir}: {exc}")
        return None
    return sorted(path for path in entries if path.is_file() and path.suffix.lower() in allowed)


def _resolve_label(image_path: Path, resolver: Optional[LabelResolver]) -> Optional[Path]:
    if resolver is None:
        return label_path_for_image(image_path)
    try:
        return resolver(image_path)
    except (OSError, ValueError) as exc:
        warning(f"Could not resolve label for {image_path.name}: {exc}")
        return None


def analyze_images(
    image_paths: Sequence[Path],
    label_resolver: Optional[LabelResolver] = None,
    *,
    progress: Optional[queue.Queue] = None,
    cancel: Optional[threading.Event] = None,
    batch_size: Optional[int] = None,
    class_map: Optional[ClassMap] = None,
    hard_case: Optional[HardCaseRule] = None,
) -> BalanceStats:
    """Categorize every image and count the categories.

    Progress goes to ``progress`` every ``batch_size`` images and on the last
    one. ``cancel`` is checked before each image; a cancelled scan reports the
    partial counts.
    """
    settings = get_balance_settings()
    batch = batch_size or settings.analysis_batch_size
    class_map = class_map or settings.class_map
    hard_case = hard_case or settings.hard_case

    counts: Dict[ImageCategory, int] = {}
    total = len(image_paths)

    for idx, image_path in enumerate(image_paths):
        if cancel is not None and cancel.is_set():
            stats = BalanceStats.from_counts(counts)
            warning(f"Balance analysis cancelled at image {idx + 1}/{total}")
            if progress is not None:
                progress.put(AnalysisCancelled(stats))
            return stats

        label_path = _resolve_label(Path(image_path), label_resolver)
        category = categorize_image(label_path, class_map=class_map, hard_case=hard_case)
        counts[category] = counts.get(category, 0) + 1

        if progress is not None and ((idx + 1) % batch == 0 or idx == total - 1):
            progress.put(AnalysisProgress(current=idx + 1, total=total, stats=BalanceStats.from_counts(counts)))

    stats = BalanceStats.from_counts(counts)
    info(
        f"Analysis complete: {stats.total_images} total images "
        f"({stats.total_player_images} player, {stats.background} background, {stats.hard_case} hard cases)"
    )
    if progress is not None:
        progress.put(AnalysisComplete(stats))
    return stats


def analyze_split(
    dataset_root: Path,
    split: DatasetSplit,
    *,
    progress: Optional[queue.Queue] = None,
    cancel: Optional[threading.Event] = None,
    batch_size: Optional[int] = None,
    extensions: Optional[Iterable[str]] = None,
) -> BalanceStats:
    info(f"Analyzing balance for split: {split.value}")
    image_paths = list_split_images(Path(dataset_root), split, extensions)
    if image_paths is None:
        stats = BalanceStats()
        if progress is not None:
            progress.put(AnalysisComplete(stats))
        return stats
    return analyze_images(image_paths, progress=progress, cancel=cancel, batch_size=batch_size)


def analyze_all_splits(
    dataset_root: Path,
    splits: Optional[Iterable[DatasetSplit]] = None,
    *,
    cancel: Optional[threading.Event] = None,
) -> GlobalBalanceStats:
    result = GlobalBalanceStats()
    for split in splits or DatasetSplit.ordered():
        if cancel is not None and cancel.is_set():
            break
        result = result.with_split(split, analyze_split(dataset_root, split, cancel=cancel))
    return result


def collect_image_metadata(
    dataset_root: Path,
    split: DatasetSplit,
    *,
    extensions: Optional[Iterable[str]] = None,
    class_map: Optional[ClassMap] = None,
    hard_case: Optional[HardCaseRule] = None,
) -> List[ImageMetadata]:
    """Snapshot every image of a split for planning and selection."""
    image_paths = list_split_images(Path(dataset_root), split, extensions) or []
    metadata: List[ImageMetadata] = []
    for image_path in image_paths:
        label_path = label_path_for_image(image_path)
        label = parse_label_file(label_path)
        label_exists = label_path.is_file()
        if label is not None:
            detection_count: Optional[int] = len(label.detections)
        else:
            # missing label means zero detections, an unreadable one is unknown
            detection_count = None if label_exists else 0

        timestamp = parse_filename_timestamp(image_path.name)
        if timestamp is None and label is not None:
            timestamp = parse_header_timestamp(label.timestamp)

        metadata.append(ImageMetadata(
            path=image_path,
            category=categorize(label, class_map=class_map, hard_case=hard_case),
            split=split,
            label_path=label_path if label_exists else None,
            detection_count=detection_count,
            timestamp=timestamp,
        ))
    return metadata


def get_recommendations(stats: BalanceStats, target_ratios: TargetRatios) -> List[str]:
    if stats.total_images == 0:
        return ["No images found in dataset."]

    total = stats.total_images
    recommendations: List[str] = []

    player_pct = stats.player_percentage()
    player_target = target_ratios.player_ratio * 100.0
    player_diff = stats.total_player_images - round(total * target_ratios.player_ratio)
    if player_diff > 0:
        recommendations.append(
            f"Remove approximately {player_diff} player images (currently {player_pct:.1f}%, target {player_target:.1f}%)"
        )
        if stats.ct_only > stats.t_only + TEAM_IMBALANCE_HINT:
            recommendations.append(f"  -> Consider removing more CT-only images ({stats.ct_only} available)")
        elif stats.t_only > stats.ct_only + TEAM_IMBALANCE_HINT:
            recommendations.append(f"  -> Consider removing more T-only images ({stats.t_only} available)")
        else:
            recommendations.append(
                f"  -> Balance removals across CT ({stats.ct_only}), T ({stats.t_only}), "
                f"and Multiple ({stats.multiple_player})"
            )
    elif player_diff < 0:
        recommendations.append(
            f"Add approximately {-player_diff} more player images (currently {player_pct:.1f}%, target {player_target:.1f}%)"
        )
    else:
        recommendations.append(f"Player images are balanced ({player_pct:.1f}%)")

    bg_pct = stats.get_percentage(ImageCategory.BACKGROUND)
    bg_target = target_ratios.background_ratio * 100.0
    bg_diff = stats.background - round(total * target_ratios.background_ratio)
    if bg_diff > 0:
        recommendations.append(
            f"Remove approximately {bg_diff} background images (currently {bg_pct:.1f}%, target {bg_target:.1f}%)"
        )
    elif bg_diff < 0:
        recommendations.append(
            f"Add approximately {-bg_diff} more background images (currently {bg_pct:.1f}%, target {bg_target:.1f}%)"
        )
    else:
        recommendations.append(f"Background images are balanced ({bg_pct:.1f}%)")

    # hard cases are only worth mentioning once some have been flagged
    if stats.hard_case > 0:
        hc_pct = stats.get_percentage(ImageCategory.HARD_CASE)
        hc_target = target_ratios.hardcase_ratio * 100.0
        hc_diff = stats.hard_case - round(total * target_ratios.hardcase_ratio)
        if hc_diff > 0:
            recommendations.append(
                f"Review and reduce hard cases by {hc_diff} (currently {hc_pct:.1f}%, target {hc_target:.1f}%)"
            )
        elif hc_diff < 0:
            recommendations.append(
                f"Mark {-hc_diff} more images as hard cases for review (currently {hc_pct:.1f}%, target {hc_target:.1f}%)"
            )
        else:
            recommendations.append(f"Hard cases are balanced ({hc_pct:.1f}%)")

    return recommendations


def calculate_balance_score(stats: BalanceStats, target_ratios: TargetRatios) -> float:
    if stats.total_images == 0:
        return 0.0
    distance = sum(
        abs(stats.group_fraction(group) - target_ratios.ratio_for_group(group))
        for group in CategoryGroup.ordered()
    )
    return max(0.0, min(1.0, 1.0 - distance / 2.0))


def format_status_label(key: str) -> str:
    return key.replace('_', ' ').title()


def classify_balance_status(balance_score: float, thresholds: Optional[Dict[str, float]] = None) -> str:
    effective_thresholds = thresholds or get_balance_settings().balance_score_thresholds
    if not effective_thresholds:
        return "Critical"
    sorted_thresholds = sorted(effective_thresholds.items(), key=lambda item: item[1], reverse=True)
    for status_key, min_score in sorted_thresholds:
        if balance_score >= min_score:
            return format_status_label(status_key)
    return format_status_label(sorted_thresholds[-1][0])


def _integrity_snapshot(
    images_without_labels: List[IntegrityIssue],
    labels_without_images: List[IntegrityIssue],
    resolution_mismatches: List[IntegrityIssue],
) -> IntegrityStats:
    return IntegrityStats(
        images_without_labels=tuple(images_without_labels),
        labels_without_images=tuple(labels_without_images),
        resolution_mismatches=tuple(resolution_mismatches),
    )


def _check_resolution(image_path: Path, label_path: Path) -> Optional[IntegrityIssue]:
    label = parse_label_file(label_path)
    expected = label.resolution_size if label is not None else None
    if expected is None:
        return None
    try:
        with Image.open(image_path) as img:
            actual = img.size
    except OSError as exc:
        warning(f"Could not read image size of {image_path.name}: {exc}")
        return None
    if tuple(actual) == expected:
        return None
    return IntegrityIssue(
        issue_type=IntegrityIssueType.RESOLUTION_MISMATCH,
        path=label_path,
        expected_counterpart=image_path,
        detail=f"label says {expected[0]}x{expected[1]}, image is {actual[0]}x{actual[1]}",
    )


def analyze_integrity(
    dataset_root: Path,
    split: DatasetSplit,
    *,
    progress: Optional[queue.Queue] = None,
    cancel: Optional[threading.Event] = None,
    batch_size: Optional[int] = None,
    check_resolution: Optional[bool] = None,
    extensions: Optional[Iterable[str]] = None,
) -> IntegrityStats:
    """Find images without labels and labels without images in one split.

    With ``check_resolution`` each label's ``Resolution:`` header is compared
    against the real size of its image.
    """
    settings = get_balance_settings()
    batch = batch_size or settings.integrity_batch_size
    if check_resolution is None:
        check_resolution = settings.check_resolution

    root = Path(dataset_root)
    labels_dir = split_labels_dir(root, split)
    info(f"Analyzing integrity for split: {split.value}")

    image_paths = list_split_images(root, split, extensions) or []
    try:
        label_paths = sorted(
            path for path in labels_dir.iterdir()
            if path.is_file() and path.suffix.lower() == LABEL_EXTENSION
        )
    except OSError as exc:
        warning(f"Failed to read directory {labels_dir}: {exc}")
        label_paths = []

    image_stems = {path.stem for path in image_paths}
    label_stems = {path.stem for path in label_paths}

    images_without_labels: List[IntegrityIssue] = []
    labels_without_images: List[IntegrityIssue] = []
    resolution_mismatches: List[IntegrityIssue] = []

    work = [(True, path) for path in image_paths] + [(False, path) for path in label_paths]
    total = len(work)

    for idx, (is_image, path) in enumerate(work):
        if cancel is not None and cancel.is_set():
            warning("Integrity analysis cancelled by user")
            stats = _integrity_snapshot(images_without_labels, labels_without_images, resolution_mismatches)
            if progress is not None:
                progress.put(IntegrityCancelled(stats))
            return stats

        if is_image:
            expected_label = labels_dir / f"{path.stem}{LABEL_EXTENSION}"
            if path.stem not in label_stems:
                images_without_labels.append(IntegrityIssue(
                    issue_type=IntegrityIssueType.IMAGE_WITHOUT_LABEL,
                    path=path,
                    expected_counterpart=expected_label,
                ))
            elif check_resolution:
                issue = _check_resolution(path, expected_label)
                if issue is not None:
                    resolution_mismatches.append(issue)
        elif path.stem not in image_stems:
            labels_without_images.append(IntegrityIssue(
                issue_type=IntegrityIssueType.LABEL_WITHOUT_IMAGE,
                path=path,
                expected_counterpart=split_images_dir(root, split) / path.stem,
            ))

        if progress is not None and ((idx + 1) % batch == 0 or idx == total - 1):
            progress.put(IntegrityProgress(
                current=idx + 1,
                total=total,
                stats=_integrity_snapshot(images_without_labels, labels_without_images, resolution_mismatches),
            ))

    stats = _integrity_snapshot(images_without_labels, labels_without_images, resolution_mismatches)
    info(
        f"Integrity analysis complete: {len(stats.images_without_labels)} images without labels, "
        f"{len(stats.labels_without_images)} labels without images"
    )
    if progress is not None:
        progress.put(IntegrityComplete(stats))
    return stats


__all__ = [
    "analyze_all_splits",
    "analyze_images",
    "analyze_integrity",
    "analyze_split",
    "calculate_balance_score",
    "categorize",
    "categorize_image",
    "classify_balance_status",
    "collect_image_metadata",
    "get_recommendations",
    "is_hard_case",
    "list_split_images",
]
