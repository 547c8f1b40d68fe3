from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .utils import ensure_directory

logger = logging.getLogger(__name__)


def cache_key(runner_os: str, revision: str) -> str:
    return f"{cache_prefix(runner_os)}{revision}"


def cache_prefix(runner_os: str) -> str:
    return f"{runner_os}-buildx-"


@dataclass
class LayerCache:
    """BuildKit layer cache persisted between runs under ``store``.

    Entries are directories named after their key. ``restore`` prefers the
    exact key and falls back to the newest entry sharing the restore prefix.
    """

    store: Path
    cache_dir: Path

    def __post_init__(self) -> None:
        self.store = Path(self.store)
        self.cache_dir = Path(self.cache_dir)

    def _entry(self, key: str) -> Path:
        return self.store / key

    def lookup(self, key: str, restore_prefix: str) -> Optional[Path]:
        exact = self._entry(key)
        if exact.is_dir():
            return exact
        if not self.store.is_dir():
            return None
        candidates = [
            path for path in self.store.iterdir() if path.is_dir() and path.name.startswith(restore_prefix)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda path: path.stat().st_mtime)

    def restore(self, key: str, restore_prefix: str) -> Optional[str]:
        """Populate ``cache_dir`` from the store; returns the matched key."""
        entry = self.lookup(key, restore_prefix)
        if entry is None:
            logger.info("layer cache miss for %s", key)
            return None
        if self.cache_dir.exists():
            shutil.rmtree(self.cache_dir)
        shutil.copytree(entry, self.cache_dir)
        logger.info("layer cache restored from %s%s", entry.name, "" if entry.name == key else " (fallback)")
        return entry.name

    def save(self, key: str) -> bool:
        """Store ``cache_dir`` under ``key``; existing keys are immutable."""
        entry = self._entry(key)
        if entry.exists():
            logger.info("layer cache %s already saved, skipping", key)
            return False
        if not self.cache_dir.is_dir():
            logger.warning("layer cache directory %s missing after build", self.cache_dir)
            return False
        ensure_directory(self.store)
        staging = self.store / f".{key}.partial"
        if staging.exists():
            shutil.rmtree(staging)
        shutil.copytree(self.cache_dir, staging)
        staging.rename(entry)
        logger.info("layer cache saved as %s", key)
        return True
