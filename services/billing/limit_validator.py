"""Pure limit checks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.billing_constants import UNLIMITED, MeteredResource
from services.billing.errors import LimitExceeded


@dataclass(frozen=True)
class LimitDecision:
    resource: str
    allowed: bool
    current: int
    limit: int
    plan_name: Optional[str] = None

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(self.limit - self.current, 0)

    def error(self) -> LimitExceeded:
        return LimitExceeded(self.resource, self.current, self.limit, self.plan_name)

    def raise_for_denial(self) -> "LimitDecision":
        if not self.allowed:
            raise self.error()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
            "planName": self.plan_name,
        }


def check_limit(
    resource: MeteredResource | str,
    limit: int,
    current: int,
    requested: int = 1,
    *,
    plan_name: Optional[str] = None,
) -> LimitDecision:
    """Allow iff the limit is unlimited or ``current + requested <= limit``."""

    name = MeteredResource(resource).value
    if requested < 0:
        raise ValueError("requested must not be negative")
    allowed = limit == UNLIMITED or current + requested <= limit
    return LimitDecision(resource=name, allowed=allowed, current=current, limit=limit, plan_name=plan_name)


__all__ = ["LimitDecision", "check_limit"]
