from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from balancer import coordinator_settings as cs
from balancer.balance_settings import reset_balance_settings
from balancer.balance_types import DatasetSplit, ImageCategory

# Label bodies per category with the canonical mapping (0 = T, 1 = CT)
LABEL_LINES = {
    ImageCategory.CT_ONLY: "1 0.50 0.50 0.10 0.20\n",
    ImageCategory.T_ONLY: "0 0.30 0.40 0.10 0.20\n",
    ImageCategory.MULTIPLE_PLAYER: "0 0.20 0.20 0.10 0.20\n1 0.70 0.70 0.10 0.20\n",
    ImageCategory.BACKGROUND: None,
}


class DatasetBuilder:
    """Writes ``<root>/<split>/images`` and ``labels`` trees for tests."""

    def __init__(self, root: Path):
        self.root = root
        self._counter = 0

    def add(
        self,
        split: DatasetSplit,
        category: ImageCategory,
        count: int = 1,
        *,
        name: Optional[str] = None,
        label: Optional[str] = None,
    ) -> List[Path]:
        images_dir = self.root / split.value / "images"
        labels_dir = self.root / split.value / "labels"
        images_dir.mkdir(parents=True, exist_ok=True)
        labels_dir.mkdir(parents=True, exist_ok=True)

        created = []
        for _ in range(count):
            self._counter += 1
            stem = name or f"{category.value}_{self._counter:05d}"
            image_path = images_dir / f"{stem}.png"
            image_path.write_bytes(b"\x89PNG fake image " + stem.encode())
            body = label if label is not None else LABEL_LINES[category]
            if body is not None:
                (labels_dir / f"{stem}.txt").write_text(body, encoding="utf-8")
            created.append(image_path)
        return created

    def populate(self, layout: Dict[DatasetSplit, Dict[ImageCategory, int]]) -> "DatasetBuilder":
        for split, counts in layout.items():
            for category, count in counts.items():
                self.add(split, category, count)
        return self

    def snapshot(self) -> Dict[str, bytes]:
        """Relative path -> content for every file under the root."""
        return {
            path.relative_to(self.root).as_posix(): path.read_bytes()
            for path in sorted(self.root.rglob("*"))
            if path.is_file()
        }


@pytest.fixture(autouse=True)
def default_settings(monkeypatch):
    """Run every test against the built-in defaults, not the local config files."""
    monkeypatch.setattr(cs, "SETTINGS", {})
    reset_balance_settings()
    yield
    reset_balance_settings()


@pytest.fixture
def dataset(tmp_path) -> DatasetBuilder:
    root = tmp_path / "dataset"
    root.mkdir()
    return DatasetBuilder(root)
