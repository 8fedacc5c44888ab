# storage.py
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# path setup
ROOT_DIR = Path(__file__).resolve().parent
DATA_DIR = ROOT_DIR / "data"
CONFIG_NAME = "config.json"

DEFAULT_CONFIG: Dict[str, Any] = {
    "log_level": "INFO",
    "image_bucket": "todo-images",
    "leaderboard_limit": 50,
    "activity_feed_size": 5,
    "timer_store": "local_storage.json",
}


def config_path(data_dir: Optional[Path] = None) -> Path:
    return Path(data_dir or DATA_DIR) / CONFIG_NAME


def ensure_data_files(default_config: Dict[str, Any], data_dir: Optional[Path] = None) -> None:
    """
    check and create data directory and config file if they do not exist.
    """
    base = Path(data_dir or DATA_DIR)
    base.mkdir(parents=True, exist_ok=True)
    if not config_path(base).exists():
        save_config(default_config, base)


def load_config(data_dir: Optional[Path] = None) -> Dict[str, Any]:
    """config.json merged over the defaults; unknown keys are kept"""
    cfg = dict(DEFAULT_CONFIG)
    path = config_path(data_dir)
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.exception("Could not read %s, using defaults", path)
            return cfg
        if isinstance(data, dict):
            cfg.update(data)
    return cfg


def save_config(cfg: Dict[str, Any], data_dir: Optional[Path] = None) -> None:
    with config_path(data_dir).open("w", encoding="utf-8") as f:
        json.dump(cfg, f, ensure_ascii=False, indent=2)


class KeyValueStore:
    """
    Per-install string key/value store kept in a single JSON file.
    Plays the part of browser localStorage for the focus timer.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.warning("Local store %s is unreadable, starting empty", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._data.get(key, default)

    def set_many(self, values: Dict[str, Any]) -> None:
        """write several keys with one flush"""
        self._data.update({k: str(v) for k, v in values.items()})
        self._flush()

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()
