from __future__ import annotations

from pathlib import Path
from typing import Any
import os
import sys

from balancer.common.deep_merge import deep_merge, load_json_optional
from balancer.log import configure as configure_log, error


def _determine_root() -> Path:
    override = os.environ.get("BALANCER_ROOT")
    if override:
        return Path(override).expanduser().resolve()

    run_module = sys.modules.get('run') or sys.modules.get('__main__')
    if run_module and hasattr(run_module, 'ROOT'):
        root_path = getattr(run_module, 'ROOT')
        if isinstance(root_path, Path) and root_path.exists():
            return root_path

    return Path(__file__).resolve().parents[1]


ROOT = _determine_root()
SYSTEM_CONFIG_PATH = ROOT / "config" / "system_config.json"
DEFAULT_CONFIG_PATH = ROOT / "config" / "config.json"


def reload_settings() -> Any:
    # System config first (general, api, paths), then the balance/dataset config
    merged: dict = {}
    for path in (SYSTEM_CONFIG_PATH, DEFAULT_CONFIG_PATH):
        data = load_json_optional(path, None)
        if isinstance(data, dict):
            merged = deep_merge(merged, data)

    global SETTINGS
    SETTINGS = merged

    general = merged.get("general", {}) if isinstance(merged, dict) else {}
    paths = merged.get("paths", {}) if isinstance(merged, dict) else {}
    log_file = paths.get("log_file")
    try:
        configure_log(
            level=general.get("log_level"),
            log_file=(ROOT / log_file) if log_file else None,
        )
    except OSError as ex:
        error(f"Failed to open log file {log_file}: {ex}")

    return merged


SETTINGS: Any = {}
reload_settings()


__all__ = [
    "ROOT",
    "SETTINGS",
    "reload_settings",
]
