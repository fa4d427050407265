"""
Daily Aggregation Pipeline

Turns one day of raw bus positions into the derived analytics tables:
1. Trip logs (reconstructed trips)
2. Segment speed hourly aggregates
3. Route performance daily summaries
4. Stop headway irregularity
5. Network summary

Every table is replaced for the target date (delete, then insert), so a run
can be repeated for the same date at any time and leaves the same result.
Runs must not overlap for the same date; the scheduler is expected to
serialize invocations.

Usage:
    python -m pipelines.aggregate_daily [--date YYYY-MM-DD]
    python -m pipelines.aggregate_daily --start-date YYYY-MM-DD --end-date YYYY-MM-DD
"""

import argparse
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import insert
from sqlalchemy.orm import Session

from src.aggregators import (
    SegmentSpeedAggregator,
    StopHeadwayAggregator,
    TripGrouper,
    network_summary_row,
    route_performance_rows,
)
from src.config import (
    AGGREGATE_CHUNK_SIZE,
    AGGREGATE_INSERT_BATCH_SIZE,
    LOG_FORMAT,
    LOG_LEVEL,
)
from src.database import get_session
from src.models import (
    NetworkSummaryDaily,
    RoutePerformanceDaily,
    RouteSegment,
    RouteStop,
    SegmentSpeedHourly,
    StopHeadwayDaily,
    TripLog,
    utcnow,
)
from src.segments import SegmentDef, StopDef
from src.streaming import PositionStream, sql_page_fetcher

logger = logging.getLogger(__name__)


class RunState(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    RECONSTRUCTING = "reconstructing"
    PERSISTING_TRIPS = "persisting_trips"
    AGGREGATING_SEGMENTS = "aggregating_segments"
    COMPUTING_ROUTE_PERF = "computing_route_perf"
    AGGREGATING_STOP_HEADWAYS = "aggregating_stop_headways"
    COMPUTING_NETWORK_SUMMARY = "computing_network_summary"
    DONE = "done"
    FAILED = "failed"


class AggregationError(Exception):
    """A stage failed; stages listed in `completed` were already committed"""

    def __init__(self, run_date: date, state: RunState, completed: list, elapsed_ms: int):
        self.run_date = run_date
        self.state = state
        self.completed = completed
        self.elapsed_ms = elapsed_ms
        super().__init__(
            f"Aggregation for {run_date.isoformat()} failed in state {state.value} "
            f"after {elapsed_ms}ms"
        )


@dataclass
class AggregationSummary:
    date: date
    positions: int = 0
    trips: int = 0
    segment_speeds: int = 0
    route_performance: int = 0
    stop_headways: int = 0
    active_vehicles: int = 0
    elapsed_ms: int = 0
    state: RunState = RunState.IDLE
    completed: list = field(default_factory=list)

    def to_response(self) -> dict:
        """JSON body returned by the cron endpoint"""
        return {
            "date": self.date.isoformat(),
            "positions": self.positions,
            "trips": self.trips,
            "routePerformance": self.route_performance,
            "elapsed": f"{self.elapsed_ms}ms",
        }


def day_bounds(run_date: date) -> tuple[datetime, datetime]:
    """[midnight UTC, next midnight UTC) for a date"""
    day_start = datetime.combine(run_date, datetime.min.time())
    return day_start, day_start + timedelta(days=1)


def default_run_date(now: Optional[datetime] = None) -> date:
    """Yesterday in UTC"""
    now = now or utcnow()
    return now.date() - timedelta(days=1)


def replace_rows(db: Session, model, delete_filter, rows: list[dict], batch_size: int) -> int:
    """
    Delete the rows matched by delete_filter, then insert rows in batches.

    Committed as one unit per table.
    """
    db.query(model).filter(*delete_filter).delete(synchronize_session=False)
    for i in range(0, len(rows), batch_size):
        db.execute(insert(model), rows[i : i + batch_size])
    db.commit()
    return len(rows)


def load_segments(db: Session) -> list[SegmentDef]:
    rows = db.query(RouteSegment).order_by(
        RouteSegment.route, RouteSegment.direction_id, RouteSegment.segment_index
    )
    return [SegmentDef.from_row(r) for r in rows]


def load_stops(db: Session) -> list[StopDef]:
    rows = db.query(RouteStop).order_by(
        RouteStop.route, RouteStop.direction_id, RouteStop.stop_sequence
    )
    return [StopDef.from_row(r) for r in rows]


def run_daily_aggregation(
    db: Session,
    run_date: date,
    chunk_size: int = AGGREGATE_CHUNK_SIZE,
    batch_size: int = AGGREGATE_INSERT_BATCH_SIZE,
    scheduled_headways: Optional[dict] = None,
    stream: Optional[PositionStream] = None,
) -> AggregationSummary:
    """
    Run the full aggregation for one date.

    Args:
        db: Database session (committed once per persisted table)
        run_date: UTC date to aggregate
        chunk_size: Rows per streaming query
        batch_size: Rows per INSERT
        scheduled_headways: Optional {(route, direction_id): seconds} used as the
            reference headway instead of the observed median
        stream: Position source; defaults to BusPositionLog for run_date

    Returns:
        AggregationSummary with counts per table

    Raises:
        AggregationError: when any stage fails. Tables persisted by earlier
            stages stay committed; re-running the date restores consistency.
    """
    started = time.time()
    summary = AggregationSummary(date=run_date)
    day_start, day_end = day_bounds(run_date)
    date_str = run_date.isoformat()

    def enter(state: RunState):
        if summary.state is not RunState.IDLE:
            summary.completed.append(summary.state)
        summary.state = state

    def elapsed_ms() -> int:
        return int((time.time() - started) * 1000)

    logger.info("[aggregate] Starting for %s", date_str)

    try:
        enter(RunState.STREAMING)
        if stream is None:
            stream = PositionStream(sql_page_fetcher(db, day_start, day_end), chunk_size)

        segments = load_segments(db)
        stops = load_stops(db)

        # Accumulators are owned by this call only
        grouper = TripGrouper()
        segment_speeds = SegmentSpeedAggregator(segments)
        stop_headways = StopHeadwayAggregator(stops)

        # 1. Stream the day once, feeding every accumulator
        for chunk in stream:
            for point in chunk:
                grouper.add(point)
                if segments:
                    segment_speeds.add(point)
                if stops:
                    stop_headways.add(point)
            summary.positions += len(chunk)
            logger.info("[aggregate] Processed %d positions...", summary.positions)

        if summary.positions == 0:
            logger.info("[aggregate] No positions found for %s", date_str)
            enter(RunState.DONE)
            summary.elapsed_ms = elapsed_ms()
            return summary

        # 2. Trips
        enter(RunState.RECONSTRUCTING)
        trips = grouper.reconstruct()
        summary.trips = len(trips)
        summary.active_vehicles = len(grouper.vehicle_ids)
        logger.info("[aggregate] Reconstructed %d trips", summary.trips)

        enter(RunState.PERSISTING_TRIPS)
        replace_rows(
            db,
            TripLog,
            [TripLog.date == run_date],
            [
                {
                    "date": run_date,
                    "vehicle_id": t.vehicle_id,
                    "vehicle_num": t.vehicle_num,
                    "route": t.route,
                    "trip_id": t.trip_id,
                    "direction_id": t.direction_id,
                    "started_at": t.started_at,
                    "ended_at": t.ended_at,
                    "runtime_secs": t.runtime_secs,
                    "positions": t.positions,
                    "avg_speed": t.avg_speed,
                }
                for t in trips
            ],
            batch_size,
        )

        # 3. Segment speeds
        enter(RunState.AGGREGATING_SEGMENTS)
        summary.segment_speeds = replace_rows(
            db,
            SegmentSpeedHourly,
            [SegmentSpeedHourly.hour_start >= day_start, SegmentSpeedHourly.hour_start < day_end],
            segment_speeds.rows(),
            batch_size,
        )
        logger.info("[aggregate] Computed %d segment speed aggregates", summary.segment_speeds)

        # 4. Route performance
        enter(RunState.COMPUTING_ROUTE_PERF)
        route_rows = route_performance_rows(trips, run_date, scheduled_headways)
        summary.route_performance = replace_rows(
            db,
            RoutePerformanceDaily,
            [RoutePerformanceDaily.date == run_date],
            route_rows,
            batch_size,
        )
        logger.info(
            "[aggregate] Computed performance for %d route-directions", summary.route_performance
        )

        # 5. Stop headways
        enter(RunState.AGGREGATING_STOP_HEADWAYS)
        summary.stop_headways = replace_rows(
            db,
            StopHeadwayDaily,
            [StopHeadwayDaily.date == run_date],
            stop_headways.rows(run_date),
            batch_size,
        )
        logger.info("[aggregate] Computed headway irregularity for %d stops", summary.stop_headways)

        # 6. Network summary
        enter(RunState.COMPUTING_NETWORK_SUMMARY)
        replace_rows(
            db,
            NetworkSummaryDaily,
            [NetworkSummaryDaily.date == run_date],
            [
                network_summary_row(
                    run_date,
                    route_rows,
                    active_vehicles=summary.active_vehicles,
                    total_trips=summary.trips,
                    positions_collected=summary.positions,
                )
            ],
            batch_size,
        )

        enter(RunState.DONE)
    except Exception as e:
        db.rollback()
        failed_state = summary.state
        summary.state = RunState.FAILED
        raise AggregationError(run_date, failed_state, list(summary.completed), elapsed_ms()) from e

    summary.elapsed_ms = elapsed_ms()
    logger.info(
        "[aggregate] Complete for %s: %d positions, %d trips in %dms",
        date_str,
        summary.positions,
        summary.trips,
        summary.elapsed_ms,
    )
    return summary


def parse_date(value: str) -> date:
    return datetime.strptime(value, "%Y-%m-%d").date()


def main():
    parser = argparse.ArgumentParser(
        description="Aggregate one day of bus positions into analytics tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Aggregate yesterday (UTC)
  python -m pipelines.aggregate_daily

  # Re-run a specific date (replaces that date's rows)
  python -m pipelines.aggregate_daily --date 2026-02-22

  # Backfill a date range (inclusive)
  python -m pipelines.aggregate_daily --start-date 2026-02-20 --end-date 2026-02-22
        """,
    )
    parser.add_argument("--date", type=parse_date, help="Date to aggregate (YYYY-MM-DD)")
    parser.add_argument("--start-date", type=parse_date, help="Start of range (requires --end-date)")
    parser.add_argument("--end-date", type=parse_date, help="End of range (requires --start-date)")
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=AGGREGATE_CHUNK_SIZE,
        help=f"Positions per streaming query (default: {AGGREGATE_CHUNK_SIZE})",
    )

    args = parser.parse_args()

    if args.date and (args.start_date or args.end_date):
        parser.error("Use either --date or --start-date/--end-date, not both")
    if (args.start_date is None) != (args.end_date is None):
        parser.error("--start-date and --end-date must be used together")
    if args.start_date and args.start_date > args.end_date:
        parser.error("--start-date must not be after --end-date")

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    if args.start_date:
        dates = []
        current = args.start_date
        while current <= args.end_date:
            dates.append(current)
            current += timedelta(days=1)
    else:
        dates = [args.date or default_run_date()]

    db = get_session()
    try:
        for run_date in dates:
            print("=" * 70)
            print(f"Aggregating {run_date.isoformat()}")
            print("=" * 70)
            summary = run_daily_aggregation(db, run_date, chunk_size=args.chunk_size)
            print(f"  ✓ Positions:         {summary.positions:,}")
            print(f"  ✓ Trips:             {summary.trips:,}")
            print(f"  ✓ Segment speeds:    {summary.segment_speeds:,}")
            print(f"  ✓ Route-directions:  {summary.route_performance:,}")
            print(f"  ✓ Stop headways:     {summary.stop_headways:,}")
            print(f"  ✓ Elapsed:           {summary.elapsed_ms}ms")
    finally:
        db.close()


if __name__ == "__main__":
    main()
