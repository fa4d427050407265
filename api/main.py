"""
FastAPI application for the transit analytics backend

Exposes the cron triggers used by the external scheduler. Both endpoints are
authenticated with a static bearer token (CRON_SECRET).
"""

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from pipelines.aggregate_daily import AggregationError, default_run_date, run_daily_aggregation
from pipelines.cleanup_positions import cleanup_positions
from src.config import LOG_FORMAT, LOG_LEVEL, get_cron_secret
from src.database import get_db

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Porto Transit Analytics API",
    description="Daily aggregation triggers for bus performance analytics",
    version="1.0.0",
)


class UnauthorizedError(Exception):
    """Missing or wrong cron bearer token"""


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError):
    return JSONResponse(status_code=401, content={"error": "Unauthorized"})


def is_authorized(authorization: Optional[str]) -> bool:
    """Constant-time check of the Authorization header against CRON_SECRET"""
    secret = get_cron_secret()
    if not secret or not authorization:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode())


def require_cron_token(authorization: Optional[str] = Header(None)):
    """
    Route dependency checking the bearer token.

    Declared on the route so it is resolved before the database session is
    opened.
    """
    if not is_authorized(authorization):
        raise UnauthorizedError()


@app.get("/")
async def root():
    """API root - health check"""
    return {"status": "ok", "name": "Porto Transit Analytics API", "version": "1.0.0"}


@app.get("/api/cron/aggregate-daily", dependencies=[Depends(require_cron_token)])
def aggregate_daily(date: Optional[str] = None, db: Session = Depends(get_db)):
    """
    Run the daily aggregation pipeline

    Processes yesterday (UTC) unless a date is given for a backfill. Safe to
    call again for the same date; derived rows are replaced.

    Args:
        date: Optional date to aggregate in YYYY-MM-DD format

    Returns:
        {date, positions, trips, routePerformance, elapsed}
    """
    if date:
        try:
            run_date = datetime.strptime(date, "%Y-%m-%d").date()
        except ValueError:
            raise HTTPException(
                status_code=400, detail=f"Invalid date '{date}'. Use YYYY-MM-DD format"
            )
    else:
        run_date = default_run_date()

    try:
        summary = run_daily_aggregation(db, run_date)
    except AggregationError as e:
        logger.exception(
            "Aggregation failed for %s in state %s after %dms (completed: %s)",
            run_date.isoformat(),
            e.state.value,
            e.elapsed_ms,
            ", ".join(s.value for s in e.completed) or "none",
        )
        return JSONResponse(status_code=500, content={"error": "Aggregation failed"})

    return summary.to_response()


@app.get("/api/cron/cleanup-positions", dependencies=[Depends(require_cron_token)])
def cleanup(db: Session = Depends(get_db)):
    """Delete raw positions older than the retention window"""
    try:
        return cleanup_positions(db)
    except Exception:
        logger.exception("Cleanup failed")
        db.rollback()
        return JSONResponse(status_code=500, content={"error": "Cleanup failed"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
