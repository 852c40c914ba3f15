"""Prometheus collector factories that tolerate duplicate registration on module reload."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from prometheus_client import REGISTRY, Counter, Histogram
from prometheus_client.registry import CollectorRegistry

from core.logging import get_logger

logger = get_logger(__name__)


def _lookup_collector(name: str, registry: CollectorRegistry):
    existing = getattr(registry, "_names_to_collectors", None)
    if isinstance(existing, dict):
        return existing.get(name) or existing.get(f"{name}_total")
    return None


def build_counter(
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None = None,
    *,
    registry: Optional[CollectorRegistry] = None,
) -> Counter:
    """Create a Counter, returning the registered instance when the name is already taken."""

    target = registry or REGISTRY
    try:
        return Counter(name, documentation, tuple(labelnames or ()), registry=target)
    except ValueError:
        collector = _lookup_collector(name, target)
        if collector is None:
            raise
        logger.debug("Counter %s already registered; reusing it.", name)
        return collector


def build_histogram(
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None = None,
    buckets: Iterable[float] | None = None,
    *,
    registry: Optional[CollectorRegistry] = None,
) -> Histogram:
    """Create a Histogram, returning the registered instance when the name is already taken."""

    target = registry or REGISTRY
    kwargs = {"buckets": tuple(buckets)} if buckets is not None else {}
    try:
        return Histogram(name, documentation, tuple(labelnames or ()), registry=target, **kwargs)
    except ValueError:
        collector = _lookup_collector(name, target)
        if collector is None:
            raise
        logger.debug("Histogram %s already registered; reusing it.", name)
        return collector


__all__ = ["build_counter", "build_histogram"]
