"""Create the billing and practice tables, waiting for the database to come up."""

from __future__ import annotations

import argparse
import time
from typing import Callable

from scripts._path import add_root

add_root()

from sqlalchemy.exc import OperationalError

import models  # noqa: F401  registers every mapped table on Base.metadata
from core.logging import get_logger
from database import Base, engine

logger = get_logger(__name__)


def _retry(operation: Callable[[], None], *, retries: int, delay: float) -> None:
    for attempt in range(1, retries + 1):
        try:
            operation()
            return
        except OperationalError as exc:
            if attempt == retries:
                raise
            logger.warning(
                "Database not ready yet (attempt %d/%d). Retrying in %.1f seconds: %s",
                attempt,
                retries,
                delay,
                exc,
            )
            time.sleep(delay)


def init_db(*, retries: int = 7, delay: float = 3.0) -> None:
    logger.info("Ensuring billing tables on %s.", engine.url.render_as_string(hide_password=True))
    _retry(lambda: Base.metadata.create_all(bind=engine), retries=retries, delay=delay)
    logger.info("Tables ready: %s", ", ".join(sorted(Base.metadata.tables)))


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--retries", type=int, default=7)
    parser.add_argument("--delay", type=float, default=3.0)
    args = parser.parse_args()
    init_db(retries=args.retries, delay=args.delay)


if __name__ == "__main__":
    main()
