from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    SmallInteger,
    String,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BusPositionLog(Base):
    """
    Raw vehicle position sample written by the ingestion worker (every ~30s).

    Read-only input to the daily aggregation; purged after the retention window.
    """

    __tablename__ = "bus_position_log"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)
    vehicle_id = Column(String, nullable=False)
    vehicle_num = Column(String)
    route = Column(String)
    trip_id = Column(String)
    direction_id = Column(SmallInteger)  # 0 or 1
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    speed = Column(Float)  # km/h
    heading = Column(Float)  # degrees

    __table_args__ = (
        Index("idx_position_recorded_at", "recorded_at"),
        Index("idx_position_route_recorded_at", "route", "recorded_at"),
        Index("idx_position_vehicle_recorded_at", "vehicle_id", "recorded_at"),
    )


class RouteSegment(Base):
    """
    ~200m slice of a route pattern polyline.

    Reference data produced by the weekly geometry refresh. Ordered within a
    route/direction by segment_index.
    """

    __tablename__ = "route_segments"

    id = Column(String, primary_key=True)  # "{route}:{direction}:{index}"
    route = Column(String, nullable=False)
    direction_id = Column(SmallInteger, nullable=False)
    segment_index = Column(Integer, nullable=False)
    start_lat = Column(Float, nullable=False)
    start_lon = Column(Float, nullable=False)
    end_lat = Column(Float, nullable=False)
    end_lon = Column(Float, nullable=False)
    mid_lat = Column(Float, nullable=False)
    mid_lon = Column(Float, nullable=False)
    length_m = Column(Float, nullable=False)
    geometry = Column(JSON, nullable=False)  # GeoJSON LineString

    __table_args__ = (Index("idx_segment_route_direction", "route", "direction_id"),)


class RouteStop(Base):
    """Ordered stop list per route/direction (reference data)"""

    __tablename__ = "route_stops"

    id = Column(String, primary_key=True)  # "{route}:{direction}:{sequence}"
    route = Column(String, nullable=False)
    direction_id = Column(SmallInteger, nullable=False)
    stop_sequence = Column(Integer, nullable=False)
    stop_id = Column(String, nullable=False)
    stop_name = Column(String)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)

    __table_args__ = (Index("idx_route_stop_route_direction", "route", "direction_id"),)


class TripLog(Base):
    """One reconstructed vehicle run. Replaced wholesale for each aggregated date."""

    __tablename__ = "trip_logs"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False)
    vehicle_id = Column(String, nullable=False)
    vehicle_num = Column(String)
    route = Column(String, nullable=False)
    trip_id = Column(String)
    direction_id = Column(SmallInteger)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)
    runtime_secs = Column(Integer)
    positions = Column(Integer, nullable=False)
    avg_speed = Column(Float)

    __table_args__ = (
        Index("idx_trip_log_date_route", "date", "route"),
        Index("idx_trip_log_vehicle_date", "vehicle_id", "date"),
    )


class SegmentSpeedHourly(Base):
    """Speed distribution per segment per UTC hour (only for hours with >= 2 samples)"""

    __tablename__ = "segment_speed_hourly"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    segment_id = Column(String, nullable=False)
    route = Column(String, nullable=False)
    direction_id = Column(SmallInteger)
    hour_start = Column(DateTime, nullable=False)
    avg_speed = Column(Float)
    median_speed = Column(Float)
    p10_speed = Column(Float)
    p90_speed = Column(Float)
    sample_count = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_segment_speed_route_hour", "route", "hour_start"),
        Index("idx_segment_speed_hour", "hour_start"),
        Index("idx_segment_speed_segment_hour", "segment_id", "hour_start", unique=True),
    )


class RoutePerformanceDaily(Base):
    """
    Headway-based reliability metrics per route/direction per day.

    Populated by the daily aggregation (pipelines/aggregate_daily.py).
    """

    __tablename__ = "route_performance_daily"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False)
    route = Column(String, nullable=False)
    direction_id = Column(SmallInteger)
    trips_observed = Column(Integer, nullable=False)

    # Headway metrics
    avg_headway_secs = Column(Float)
    scheduled_headway_secs = Column(Float)  # Null when no schedule was supplied
    headway_adherence_pct = Column(Float)
    awt_secs = Column(Float)
    excess_wait_time_secs = Column(Float)
    bunching_pct = Column(Float)
    gapping_pct = Column(Float)

    # Runtime and speed
    avg_runtime_secs = Column(Float)
    avg_commercial_speed = Column(Float)  # km/h

    grade = Column(String)  # A-F or N/A

    __table_args__ = (
        Index("idx_route_perf_date", "date"),
        Index("idx_route_perf_route", "route"),
        Index("idx_route_perf_date_route_direction", "date", "route", "direction_id", unique=True),
    )


class StopHeadwayDaily(Base):
    """Headway irregularity at each stop (only for stops with >= 3 observed arrivals)"""

    __tablename__ = "stop_headway_daily"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False)
    route = Column(String, nullable=False)
    direction_id = Column(SmallInteger)
    stop_id = Column(String, nullable=False)
    stop_name = Column(String)
    stop_sequence = Column(Integer, nullable=False)
    avg_headway_secs = Column(Float)
    headway_std_dev = Column(Float)
    observations = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_stop_headway_date_route", "date", "route"),
        Index(
            "idx_stop_headway_date_route_direction_stop",
            "date",
            "route",
            "direction_id",
            "stop_id",
            unique=True,
        ),
    )


class NetworkSummaryDaily(Base):
    """One row per day rolling up all route/directions"""

    __tablename__ = "network_summary_daily"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, unique=True, index=True)
    active_vehicles = Column(Integer, nullable=False)
    total_trips = Column(Integer, nullable=False)
    avg_commercial_speed = Column(Float)
    avg_excess_wait_time = Column(Float)
    worst_route = Column(String)
    worst_route_ewt = Column(Float)
    positions_collected = Column(BigInteger, nullable=False)
