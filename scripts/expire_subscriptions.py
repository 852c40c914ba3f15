"""Mark live subscriptions whose end date has passed as expired."""

from __future__ import annotations

import argparse

from scripts._path import add_root

add_root()

from core.logging import get_logger
from database import session_scope
from services.billing.sweeper import sweep_expired_subscriptions

logger = get_logger(__name__)


def expire_subscriptions(*, dry_run: bool = False) -> int:
    with session_scope() as session:
        commands = sweep_expired_subscriptions(session, dry_run=dry_run)
    for command in commands:
        logger.info(
            "%s organization=%s subscription=%s ended=%s",
            "Would expire" if dry_run else "Expired",
            command.organization_id,
            command.subscription_id,
            command.expired_at.isoformat(),
        )
    return len(commands)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--dry-run", action="store_true", help="list overdue subscriptions without changing them")
    args = parser.parse_args()
    expire_subscriptions(dry_run=args.dry_run)


if __name__ == "__main__":
    main()
