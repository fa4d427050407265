"""
Raw Position Cleanup

Deletes raw bus positions older than the retention window. Scheduled after
the daily aggregation so yesterday's rows are always processed first.

Usage:
    python -m pipelines.cleanup_positions [--hours N]
"""

import argparse
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from src.config import LOG_FORMAT, LOG_LEVEL, POSITION_RETENTION_HOURS
from src.database import get_session
from src.models import BusPositionLog, utcnow

logger = logging.getLogger(__name__)


def cleanup_positions(
    db: Session,
    now: Optional[datetime] = None,
    retention_hours: int = POSITION_RETENTION_HOURS,
) -> dict:
    """
    Delete positions recorded before now - retention_hours

    Returns:
        {"deleted": row count, "cutoff": ISO timestamp, "elapsed": "Nms"}
    """
    started = time.time()
    now = now or utcnow()
    cutoff = now - timedelta(hours=retention_hours)

    deleted = (
        db.query(BusPositionLog)
        .filter(BusPositionLog.recorded_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()

    elapsed = int((time.time() - started) * 1000)
    logger.info(
        "[cleanup] Deleted %d positions older than %s in %dms", deleted, cutoff.isoformat(), elapsed
    )
    return {"deleted": deleted, "cutoff": cutoff.isoformat(), "elapsed": f"{elapsed}ms"}


def main():
    parser = argparse.ArgumentParser(description="Delete raw positions past the retention window")
    parser.add_argument(
        "--hours",
        type=int,
        default=POSITION_RETENTION_HOURS,
        help=f"Retention window in hours (default: {POSITION_RETENTION_HOURS})",
    )
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    db = get_session()
    try:
        result = cleanup_positions(db, retention_hours=args.hours)
        print(f"✓ Deleted {result['deleted']:,} positions older than {result['cutoff']}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
