"""Small JSON list persisted to disk, shared by in-process callers."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Sequence


class JsonStateStore:
    """Persist a bounded JSON list under ``{root_key: [...]}`` with an in-memory copy."""

    def __init__(self, path: Path, root_key: str, *, logger: Optional[logging.Logger] = None) -> None:
        self._path = Path(path)
        self._root_key = root_key
        self._cache: Optional[List[dict]] = None
        self._lock = threading.RLock()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, reload: bool = False) -> List[dict]:
        with self._lock:
            if reload or self._cache is None:
                self._cache = self._read()
            return [dict(item) for item in self._cache]

    def _read(self) -> List[dict]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as exc:
            self._logger.warning("Failed to load state from %s: %s", self._path, exc)
            return []
        items = payload.get(self._root_key, []) if isinstance(payload, Mapping) else []
        if not isinstance(items, list):
            self._logger.warning("State file %s has a non-list '%s' root.", self._path, self._root_key)
            return []
        return [dict(item) for item in items if isinstance(item, Mapping)]

    def store(self, items: Sequence[Mapping[str, Any]]) -> None:
        with self._lock:
            payload = {self._root_key: [dict(item) for item in items]}
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(self._path)
            self._cache = [dict(item) for item in items]

    def update(self, mutate: Callable[[List[dict]], List[dict]]) -> List[dict]:
        """Load, apply ``mutate`` and store under one lock."""

        with self._lock:
            items = mutate(self.load())
            self.store(items)
            return items

    def reset(self, *, path: Optional[Path] = None) -> None:
        with self._lock:
            if path is not None:
                self._path = Path(path)
            self._cache = None


__all__ = ["JsonStateStore"]
