"""Print a subscription health report: status counts, renewals due soon, overdue rows."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from scripts._path import add_root

add_root()

from core.logging import get_logger
from database import session_scope
from services.billing.sweeper import build_subscription_report

logger = get_logger(__name__)


def check_subscriptions(*, warning_days: int = 7) -> dict:
    with session_scope() as session:
        report = build_subscription_report(session, warning_days=warning_days)
    payload = asdict(report)
    payload["generated_at"] = report.generated_at.isoformat()
    if report.overdue:
        logger.warning(
            "%d live subscription(s) are past their end date; run scripts/expire_subscriptions.py.",
            len(report.overdue),
        )
    return payload


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--warning-days", type=int, default=7, help="window for the expiring-soon list")
    args = parser.parse_args()
    print(json.dumps(check_subscriptions(warning_days=args.warning_days), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
