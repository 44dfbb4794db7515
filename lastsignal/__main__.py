# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Run one check-in processing pass:

    python -m lastsignal [--init-db]
"""
import argparse
import json
import logging
import sys
import time

from sqlalchemy.exc import OperationalError

from .config import get_settings
from .database import init_db
from .scheduler import build_scheduler

logger = logging.getLogger("lastsignal")

RETRY_DELAYS = [15, 45]


def run_once() -> dict:
    report = build_scheduler(get_settings()).run()
    return report.as_dict()


def main(argv=None, sleep=time.sleep) -> int:
    parser = argparse.ArgumentParser(prog="lastsignal", description="Process due check-ins once.")
    parser.add_argument("--init-db", action="store_true", help="create missing tables first")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.init_db:
        init_db()

    for attempt in range(len(RETRY_DELAYS) + 1):
        try:
            results = run_once()
        except OperationalError as exc:
            if attempt < len(RETRY_DELAYS):
                delay = RETRY_DELAYS[attempt]
                logger.warning(
                    "Transient error (attempt %s/%s), retrying in %ss: %s",
                    attempt + 1, len(RETRY_DELAYS) + 1, delay, exc,
                )
                sleep(delay)
                continue
            logger.error("Check-in processing failed: %s", exc)
            return 1
        except Exception:  # noqa: BLE001
            logger.exception("Check-in processing failed")
            return 1

        print(json.dumps({"status": "ok", "results": results}))
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
