"""
Shared pytest fixtures for the transit analytics tests

Provides fixtures for:
- Database setup/teardown with in-memory SQLite
- FastAPI test client
- Mock data generators (positions, segments, stops)
- Environment variable mocking
"""

from datetime import date, datetime, timedelta
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from api.main import app
from src.database import get_db
from src.models import Base, BusPositionLog, RouteSegment, RouteStop
from src.segments import split_into_segments
from src.streaming import PositionPoint

TEST_DATE = date(2026, 2, 22)
DAY_START = datetime(2026, 2, 22, 0, 0, 0)

# A straight east-west line through central Porto, ~1.7 km long with ~209m edges
ROUTE_COORDS = [(-8.6200 + i * 0.0025, 41.1500) for i in range(9)]

CRON_SECRET = "test_cron_secret_do_not_use"


@pytest.fixture(scope="function")
def test_engine():
    """
    Create an in-memory SQLite engine for one test

    StaticPool keeps a single connection so the TestClient worker thread
    sees the same database as the test itself.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Database session for a test; the pipeline commits through it freely"""
    SessionLocal = sessionmaker(bind=test_engine, autoflush=False)
    session = SessionLocal()

    yield session

    session.close()


@pytest.fixture(scope="function")
def client(db_session):
    """
    FastAPI TestClient with database dependency override

    All API requests will use the test database session
    """

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}


def make_point(
    id,
    recorded_at,
    vehicle_id="V1",
    route="205",
    lat=41.15,
    lon=-8.61,
    trip_id=None,
    direction_id=0,
    speed=20.0,
    vehicle_num=None,
) -> PositionPoint:
    """Build a PositionPoint with sensible defaults"""
    return PositionPoint(
        id=id,
        recorded_at=recorded_at,
        vehicle_id=vehicle_id,
        vehicle_num=vehicle_num,
        route=route,
        trip_id=trip_id,
        direction_id=direction_id,
        lat=lat,
        lon=lon,
        speed=speed,
    )


def vehicle_run(
    vehicle_id,
    start,
    count,
    interval_secs=60,
    route="205",
    direction_id=0,
    trip_id=None,
    speed=20.0,
    coords=ROUTE_COORDS,
):
    """
    Position dicts for one vehicle driving along `coords`

    The vehicle advances one vertex per sample and stays on the last vertex
    once the line is exhausted.
    """
    rows = []
    for i in range(count):
        lon, lat = coords[min(i, len(coords) - 1)]
        rows.append(
            {
                "recorded_at": start + timedelta(seconds=i * interval_secs),
                "vehicle_id": vehicle_id,
                "vehicle_num": vehicle_id.lstrip("V"),
                "route": route,
                "trip_id": trip_id,
                "direction_id": direction_id,
                "lat": lat,
                "lon": lon,
                "speed": speed,
                "heading": 90.0,
            }
        )
    return rows


def insert_positions(db: Session, rows: list[dict]) -> list[BusPositionLog]:
    positions = [BusPositionLog(**row) for row in rows]
    db.add_all(positions)
    db.commit()
    return positions


def insert_reference(db: Session, route="205", direction_id=0, coords=ROUTE_COORDS, stop_every=4):
    """Store segments of `coords` and a stop on every `stop_every`-th vertex"""
    segments = split_into_segments(route, direction_id, coords)
    for seg in segments:
        db.add(
            RouteSegment(
                id=seg.id,
                route=seg.route,
                direction_id=seg.direction_id,
                segment_index=seg.segment_index,
                start_lat=seg.start_lat,
                start_lon=seg.start_lon,
                end_lat=seg.end_lat,
                end_lon=seg.end_lon,
                mid_lat=seg.mid_lat,
                mid_lon=seg.mid_lon,
                length_m=seg.length_m,
                geometry=seg.geometry,
            )
        )

    stops = []
    for sequence, (lon, lat) in enumerate(coords[::stop_every]):
        stop = RouteStop(
            id=f"{route}:{direction_id}:{sequence}",
            route=route,
            direction_id=direction_id,
            stop_sequence=sequence,
            stop_id=f"STCP:S{sequence}",
            stop_name=f"Stop {sequence}",
            lat=lat,
            lon=lon,
        )
        db.add(stop)
        stops.append(stop)

    db.commit()
    return segments, stops


@pytest.fixture
def sample_day(db_session):
    """
    One day of route 205 traffic plus reference geometry

    Five vehicles leave every 10 minutes from 08:00, each reporting once a
    minute for 11 minutes. A sixth vehicle has no route and must be ignored.
    Positions from the previous and next day bracket the window.
    """
    insert_reference(db_session)

    rows = []
    for n in range(5):
        start = DAY_START + timedelta(hours=8, minutes=10 * n)
        rows.extend(vehicle_run(f"V{n + 1}", start, count=11, trip_id=f"T{n + 1}"))

    unrouted = vehicle_run("V99", DAY_START + timedelta(hours=9), count=5)
    for row in unrouted:
        row["route"] = None
    rows.extend(unrouted)

    rows.extend(vehicle_run("V1", DAY_START - timedelta(minutes=30), count=5))
    rows.extend(vehicle_run("V1", DAY_START + timedelta(days=1, minutes=5), count=5))

    return insert_positions(db_session, rows)


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """
    Mock environment variables for tests

    autouse=True means this runs for every test automatically
    """
    # Use in-memory SQLite for tests (overridden by db_session fixture)
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
