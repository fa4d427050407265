"""
Bounded streaming of a day's raw positions

The daily volume can reach millions of rows, so positions are never loaded
all at once. PositionStream yields fixed-size chunks ordered by
(recorded_at, id) and pages with a keyset cursor taken from the last row of
the previous chunk. The page source is a plain callable, which keeps the
aggregation code independent of the storage backend.
"""

from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from src.models import BusPositionLog

Cursor = tuple  # (recorded_at, id)
PageFetcher = Callable[[Optional[Cursor], int], list]

# Plain column rows are not tracked by the session, so memory stays bounded by
# the chunk size
POSITION_COLUMNS = (
    BusPositionLog.id,
    BusPositionLog.recorded_at,
    BusPositionLog.vehicle_id,
    BusPositionLog.vehicle_num,
    BusPositionLog.route,
    BusPositionLog.trip_id,
    BusPositionLog.direction_id,
    BusPositionLog.lat,
    BusPositionLog.lon,
    BusPositionLog.speed,
)


@dataclass(frozen=True)
class PositionPoint:
    """One telemetry sample as consumed by the aggregators"""

    id: int
    recorded_at: datetime
    vehicle_id: str
    route: str
    lat: float
    lon: float
    vehicle_num: Optional[str] = None
    trip_id: Optional[str] = None
    direction_id: Optional[int] = None
    speed: Optional[float] = None

    @property
    def cursor(self) -> Cursor:
        return (self.recorded_at, self.id)

    @classmethod
    def from_row(cls, row) -> "PositionPoint":
        return cls(
            id=row.id,
            recorded_at=row.recorded_at,
            vehicle_id=row.vehicle_id,
            vehicle_num=row.vehicle_num,
            route=row.route,
            trip_id=row.trip_id,
            direction_id=row.direction_id,
            lat=row.lat,
            lon=row.lon,
            speed=row.speed,
        )


class PositionStream:
    """
    Restartable iterable of position chunks.

    Every iteration starts again from the first row. Iteration stops after a
    chunk shorter than chunk_size (including an empty one).

    Example:
        >>> stream = PositionStream(sql_page_fetcher(db, day_start, day_end), 5000)
        >>> for chunk in stream:
        ...     for point in chunk:
        ...         aggregator.add(point)
    """

    def __init__(self, fetch_page: PageFetcher, chunk_size: int = 5000):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.fetch_page = fetch_page
        self.chunk_size = chunk_size

    def __iter__(self) -> Iterator[list[PositionPoint]]:
        cursor = None
        while True:
            chunk = self.fetch_page(cursor, self.chunk_size)
            if not chunk:
                return
            yield chunk
            if len(chunk) < self.chunk_size:
                return
            cursor = chunk[-1].cursor

    def points(self) -> Iterator[PositionPoint]:
        """Flatten the chunks into single points"""
        for chunk in self:
            yield from chunk


def sql_page_fetcher(db: Session, day_start: datetime, day_end: datetime) -> PageFetcher:
    """
    Page source over BusPositionLog for [day_start, day_end).

    Rows without a route cannot be attributed to anything and are skipped.
    """

    def fetch_page(cursor: Optional[Cursor], limit: int) -> list[PositionPoint]:
        query = db.query(*POSITION_COLUMNS).filter(
            BusPositionLog.recorded_at >= day_start,
            BusPositionLog.recorded_at < day_end,
            BusPositionLog.route.isnot(None),
        )
        if cursor is not None:
            last_ts, last_id = cursor
            query = query.filter(
                or_(
                    BusPositionLog.recorded_at > last_ts,
                    and_(BusPositionLog.recorded_at == last_ts, BusPositionLog.id > last_id),
                )
            )
        rows = (
            query.order_by(BusPositionLog.recorded_at.asc(), BusPositionLog.id.asc())
            .limit(limit)
            .all()
        )
        return [PositionPoint.from_row(row) for row in rows]

    return fetch_page


def memory_page_fetcher(points: list[PositionPoint]) -> PageFetcher:
    """Page source over an in-memory list, with the same ordering contract"""
    ordered = sorted(points, key=lambda p: p.cursor)
    keys = [p.cursor for p in ordered]

    def fetch_page(cursor: Optional[Cursor], limit: int) -> list[PositionPoint]:
        start = 0 if cursor is None else bisect_right(keys, cursor)
        return ordered[start : start + limit]

    return fetch_page
