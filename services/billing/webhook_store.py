"""Disk-backed ledger of recently processed gateway event ids."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from core.env import env_int, env_str
from services.json_state_store import JsonStateStore

logger = logging.getLogger(__name__)

_DEFAULT_STATE_PATH = Path("uploads") / "billing" / "webhook_events.json"
_DEFAULT_WINDOW = 500


@dataclass(slots=True)
class _ProcessedEvent:
    event_id: str
    event_type: Optional[str]
    outcome: Optional[str]
    processed_at: str


def _state_path() -> Path:
    return Path(env_str("BILLING_WEBHOOK_STATE_FILE") or _DEFAULT_STATE_PATH)


def _window() -> int:
    return env_int("BILLING_WEBHOOK_DEDUPE_WINDOW", _DEFAULT_WINDOW, minimum=1)


_EVENT_STORE = JsonStateStore(_state_path(), "events", logger=logger)


def _load_events() -> List[_ProcessedEvent]:
    events: List[_ProcessedEvent] = []
    for item in _EVENT_STORE.load():
        event_id = str(item.get("event_id") or "").strip()
        processed_at = str(item.get("processed_at") or "").strip()
        if not event_id or not processed_at:
            continue
        events.append(
            _ProcessedEvent(
                event_id=event_id,
                event_type=item.get("event_type"),
                outcome=item.get("outcome"),
                processed_at=processed_at,
            )
        )
    return events


def has_processed_event(event_id: Optional[str]) -> bool:
    if not event_id:
        return False
    return any(event.event_id == event_id for event in _load_events())


def record_processed_event(event_id: Optional[str], *, event_type: Optional[str], outcome: Optional[str]) -> None:
    """Remember ``event_id``; only the newest entries within the dedupe window are kept."""

    if not event_id:
        return
    entry = _ProcessedEvent(
        event_id=event_id,
        event_type=event_type,
        outcome=outcome,
        processed_at=datetime.now(timezone.utc).isoformat(),
    )

    def _append(items: List[dict]) -> List[dict]:
        kept = [item for item in items if item.get("event_id") != event_id]
        kept.append(asdict(entry))
        return kept[-_window():]

    _EVENT_STORE.update(_append)


def reset_state_for_tests(*, path: Optional[Path] = None) -> None:  # pragma: no cover - testing helper
    _EVENT_STORE.reset(path=path or _state_path())


__all__ = ["has_processed_event", "record_processed_event", "reset_state_for_tests"]
