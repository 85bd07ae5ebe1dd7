"""Common utility functions shared by the balancer modules."""
from __future__ import annotations

from pathlib import Path
from typing import Union


def ensure_directory(path: Union[str, Path]) -> Path:
    """Ensure directory exists, create if it doesn't.

    Args:
        path: Directory path to ensure

    Returns:
        Path object of the ensured directory

    Raises:
        OSError: If the directory cannot be created
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


__all__ = ["ensure_directory"]
