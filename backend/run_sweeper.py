"""Run the session cleanup sweeper as a standalone process.

Opportunistic sweeps already run after refreshes; deployments with a
scheduler can run this instead (``--once`` for cron, looping otherwise).
"""

import argparse
import logging
import time

from sessionguard.config import settings
from sessionguard.core.database import SessionLocal
from sessionguard.services.audit_service import AuditLog
from sessionguard.services.cleanup_service import CleanupSweeper
from sessionguard.services.password_reset_service import PasswordResetTokenService
from sessionguard.services.rate_limiter import SqlRateLimitStore
from sessionguard.services.session_store import SqlSessionStore

logger = logging.getLogger("sessionguard.sweeper")


def sweep_once() -> None:
    db = SessionLocal()
    try:
        sweeper = CleanupSweeper(
            SqlSessionStore(db),
            SqlRateLimitStore(db),
            PasswordResetTokenService(db),
            audit=AuditLog(db),
        )
        stats = sweeper.cleanup_expired()
        logger.info(f"Sweep finished: {stats.total} records removed")
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    if args.once:
        sweep_once()
        return

    interval = settings.SESSION_CLEANUP_INTERVAL_HOURS * 3600
    try:
        while True:
            try:
                sweep_once()
            except Exception:
                logger.exception("Sweep failed; retrying next interval")
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info("Sweeper stopped")


if __name__ == "__main__":
    main()
