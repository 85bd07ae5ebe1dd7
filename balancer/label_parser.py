"""Reader for YOLO label files.

A label file holds one ``class_id x_center y_center width height`` line per
detection (normalized floats). An optional comment line carries capture
metadata::

    # Resolution: 2560x1440, Map: de_dust2, Time: 1764637338

Malformed detection lines are skipped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from balancer.log import warning

LABEL_EXTENSION = ".txt"


@dataclass(frozen=True)
class YoloDetection:
    class_id: int
    x_center: float
    y_center: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def bounds(self) -> Tuple[float, float, float, float]:
        half_w = self.width / 2
        half_h = self.height / 2
        return (
            self.x_center - half_w,
            self.y_center - half_h,
            self.x_center + half_w,
            self.y_center + half_h,
        )


@dataclass(frozen=True)
class LabelInfo:
    detections: List[YoloDetection] = field(default_factory=list)
    resolution: Optional[str] = None
    map_name: Optional[str] = None
    timestamp: Optional[str] = None

    @property
    def resolution_size(self) -> Optional[Tuple[int, int]]:
        """Parse ``resolution`` (``"2560x1440"``) into ``(width, height)``."""
        if not self.resolution:
            return None
        parts = self.resolution.lower().split("x")
        if len(parts) != 2:
            return None
        try:
            width, height = int(parts[0].strip()), int(parts[1].strip())
        except ValueError:
            return None
        return width, height


def _parse_header(line: str) -> dict:
    values = {}
    for part in line[1:].split(","):
        part = part.strip()
        for key, prefix in (("resolution", "Resolution:"), ("map_name", "Map:"), ("timestamp", "Time:")):
            if part.startswith(prefix):
                values[key] = part[len(prefix):].strip()
    return values


def _parse_detection(line: str) -> Optional[YoloDetection]:
    values = line.split()
    if len(values) != 5:
        return None
    try:
        class_id = int(values[0])
        x, y, w, h = (float(v) for v in values[1:])
    except ValueError:
        return None
    if class_id < 0:
        return None
    return YoloDetection(class_id=class_id, x_center=x, y_center=y, width=w, height=h)


def parse_label_text(content: str) -> LabelInfo:
    detections: List[YoloDetection] = []
    header: dict = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#"):
            header.update(_parse_header(line))
            continue
        detection = _parse_detection(line)
        if detection is not None:
            detections.append(detection)
    return LabelInfo(detections=detections, **header)


def parse_label_file(label_path: Union[str, Path, None]) -> Optional[LabelInfo]:
    """Parse a label file, or return ``None`` when there is nothing readable.

    A missing file is the normal background case and is silent; a file that
    exists but cannot be read or decoded is logged.
    """
    if label_path is None:
        return None
    path = Path(label_path)
    if not path.is_file():
        return None
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        warning(f"Unreadable label file {path}: {exc}")
        return None
    return parse_label_text(content)


def label_path_for_image(image_path: Union[str, Path]) -> Path:
    """Map ``<root>/<split>/images/<name>.<ext>`` to ``<root>/<split>/labels/<name>.txt``.

    The last ``images`` segment of the path is the one substituted; a path with
    no such segment keeps its directory and only changes extension.
    """
    path = Path(image_path)
    parts = list(path.parts)
    for idx in range(len(parts) - 2, -1, -1):
        if parts[idx] == "images":
            parts[idx] = "labels"
            break
    return Path(*parts).with_suffix(LABEL_EXTENSION)


__all__ = [
    "LABEL_EXTENSION",
    "LabelInfo",
    "YoloDetection",
    "label_path_for_image",
    "parse_label_file",
    "parse_label_text",
]
