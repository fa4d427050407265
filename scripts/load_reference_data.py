"""
Load route geometry reference data from a local JSON file

Seeds RouteSegment and RouteStop for development and backfills. Each pattern
is split into ~200m segments; the rows of that route/direction are replaced.

Input format:
    [
      {
        "route": "205",
        "directionId": 0,
        "coordinates": [[-8.61, 41.15], [-8.60, 41.15], ...],   # [lon, lat]
        "stops": [{"stopId": "STCP:BLRB1", "name": "Bolhão", "lat": 41.15, "lon": -8.60}]
      }
    ]

Usage:
  python -m scripts.load_reference_data patterns.json
"""

import argparse
import json
import logging

from sqlalchemy import insert
from sqlalchemy.orm import Session

from src.config import LOG_FORMAT, LOG_LEVEL
from src.database import get_session
from src.models import RouteSegment, RouteStop
from src.segments import DEFAULT_SEGMENT_LENGTH_M, split_into_segments

logger = logging.getLogger(__name__)


def load_pattern(db: Session, pattern: dict, target_length_m: float = DEFAULT_SEGMENT_LENGTH_M):
    """
    Replace segments and stops of one route/direction

    Returns:
        (segments written, stops written)
    """
    route = str(pattern["route"])
    direction_id = int(pattern["directionId"])
    coordinates = [(float(c[0]), float(c[1])) for c in pattern["coordinates"]]
    segments = split_into_segments(route, direction_id, coordinates, target_length_m)

    db.query(RouteSegment).filter(
        RouteSegment.route == route, RouteSegment.direction_id == direction_id
    ).delete(synchronize_session=False)
    db.query(RouteStop).filter(
        RouteStop.route == route, RouteStop.direction_id == direction_id
    ).delete(synchronize_session=False)

    segment_rows = [
        {
            "id": seg.id,
            "route": seg.route,
            "direction_id": seg.direction_id,
            "segment_index": seg.segment_index,
            "start_lat": seg.start_lat,
            "start_lon": seg.start_lon,
            "end_lat": seg.end_lat,
            "end_lon": seg.end_lon,
            "mid_lat": seg.mid_lat,
            "mid_lon": seg.mid_lon,
            "length_m": seg.length_m,
            "geometry": seg.geometry,
        }
        for seg in segments
    ]

    stop_rows = [
        {
            "id": f"{route}:{direction_id}:{sequence}",
            "route": route,
            "direction_id": direction_id,
            "stop_sequence": sequence,
            "stop_id": stop["stopId"],
            "stop_name": stop.get("name"),
            "lat": float(stop["lat"]),
            "lon": float(stop["lon"]),
        }
        for sequence, stop in enumerate(pattern.get("stops") or [])
    ]

    if segment_rows:
        db.execute(insert(RouteSegment), segment_rows)
    if stop_rows:
        db.execute(insert(RouteStop), stop_rows)

    db.commit()
    return len(segment_rows), len(stop_rows)


def load_patterns(db: Session, patterns: list[dict]) -> dict:
    """
    Load every pattern; a malformed pattern is logged and skipped

    Returns:
        {"patterns": loaded, "failed": skipped, "segments": n, "stops": n}
    """
    totals = {"patterns": 0, "failed": 0, "segments": 0, "stops": 0}

    for pattern in patterns:
        try:
            segment_count, stop_count = load_pattern(db, pattern)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            db.rollback()
            logger.error(
                "Failed to process pattern for %s:%s: %s",
                pattern.get("route") if isinstance(pattern, dict) else "?",
                pattern.get("directionId") if isinstance(pattern, dict) else "?",
                e,
            )
            totals["failed"] += 1
            continue

        totals["patterns"] += 1
        totals["segments"] += segment_count
        totals["stops"] += stop_count

    return totals


def main():
    parser = argparse.ArgumentParser(description="Load route segments and stops from JSON")
    parser.add_argument("path", help="JSON file with route patterns")
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    with open(args.path, encoding="utf-8") as f:
        patterns = json.load(f)

    db = get_session()
    try:
        totals = load_patterns(db, patterns)
    finally:
        db.close()

    print(
        f"✓ Loaded {totals['segments']:,} segments and {totals['stops']:,} stops "
        f"from {totals['patterns']} patterns ({totals['failed']} failed)"
    )


if __name__ == "__main__":
    main()
