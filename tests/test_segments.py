"""
Unit tests for route geometry (src/segments.py)

Run with: pytest tests/test_segments.py
"""

import numpy as np
import pytest

from src.segments import (
    RouteIndex,
    SegmentDef,
    StopDef,
    find_nearest_stop,
    haversine_distance,
    haversine_distances,
    join_segments,
    snap_to_segment,
    split_into_segments,
)
from conftest import ROUTE_COORDS


def make_segment(id, route="205", direction_id=0, mid_lat=41.15, mid_lon=-8.61, index=0):
    return SegmentDef(
        id=id,
        route=route,
        direction_id=direction_id,
        segment_index=index,
        start_lat=mid_lat,
        start_lon=mid_lon,
        end_lat=mid_lat,
        end_lon=mid_lon,
        mid_lat=mid_lat,
        mid_lon=mid_lon,
        length_m=200.0,
    )


class TestHaversineDistance:
    """Tests for haversine_distance"""

    def test_same_point_is_zero(self):
        assert haversine_distance(41.15, -8.61, 41.15, -8.61) == 0

    def test_one_degree_of_latitude(self):
        """One degree of latitude is ~111.2 km"""
        assert haversine_distance(41.0, -8.61, 42.0, -8.61) == pytest.approx(111195, rel=1e-3)

    def test_symmetric(self):
        a = haversine_distance(41.15, -8.61, 41.16, -8.60)
        b = haversine_distance(41.16, -8.60, 41.15, -8.61)
        assert a == pytest.approx(b)


class TestSplitIntoSegments:
    """Tests for split_into_segments"""

    def test_fewer_than_two_coordinates(self):
        assert split_into_segments("205", 0, []) == []
        assert split_into_segments("205", 0, [(-8.61, 41.15)]) == []

    def test_joined_segments_rebuild_polyline(self):
        """Concatenating segments (dropping shared vertices) gives back the input"""
        coords = [(-8.62 + i * 0.0005, 41.15 + (i % 3) * 0.0002) for i in range(40)]
        segments = split_into_segments("205", 1, coords)

        assert len(segments) > 1
        assert join_segments(segments) == [tuple(c) for c in coords]

    def test_consecutive_segments_share_boundary(self):
        coords = [(-8.62 + i * 0.0005, 41.15) for i in range(30)]
        segments = split_into_segments("205", 0, coords)

        for prev, curr in zip(segments, segments[1:]):
            assert (prev.end_lat, prev.end_lon) == (curr.start_lat, curr.start_lon)

    def test_segment_lengths(self):
        """Every segment but the last reaches the target length"""
        coords = [(-8.62 + i * 0.0005, 41.15) for i in range(30)]
        segments = split_into_segments("205", 0, coords, target_length_m=200)

        for seg in segments[:-1]:
            assert seg.length_m >= 200
        assert segments[-1].length_m > 0

        total = sum(
            haversine_distance(a[1], a[0], b[1], b[0]) for a, b in zip(coords, coords[1:])
        )
        assert sum(seg.length_m for seg in segments) == pytest.approx(total)

    def test_ids_and_indexes(self):
        segments = split_into_segments("205", 1, ROUTE_COORDS)

        assert [seg.segment_index for seg in segments] == list(range(len(segments)))
        assert segments[0].id == "205:1:0"
        assert segments[-1].id == f"205:1:{len(segments) - 1}"

    def test_short_polyline_is_one_segment(self):
        segments = split_into_segments("205", 0, [(-8.61, 41.15), (-8.6101, 41.15)])

        assert len(segments) == 1
        assert segments[0].length_m < 200

    def test_geometry_is_geojson_linestring(self):
        seg = split_into_segments("205", 0, ROUTE_COORDS)[0]

        assert seg.geometry["type"] == "LineString"
        assert seg.geometry["coordinates"][0] == list(ROUTE_COORDS[0])


class TestSnapToSegment:
    """Tests for snap_to_segment"""

    def test_snaps_to_nearest_midpoint(self):
        segments = [
            make_segment("205:0:0", mid_lon=-8.6100),
            make_segment("205:0:1", mid_lon=-8.6080, index=1),
        ]
        assert snap_to_segment(41.15, -8.6082, "205", 0, segments) == "205:0:1"

    def test_ignores_other_routes(self):
        segments = [make_segment("500:0:0", route="500")]
        assert snap_to_segment(41.15, -8.61, "205", 0, segments) is None

    def test_filters_direction_when_known(self):
        segments = [make_segment("205:1:0", direction_id=1)]

        assert snap_to_segment(41.15, -8.61, "205", 0, segments) is None
        assert snap_to_segment(41.15, -8.61, "205", None, segments) == "205:1:0"

    def test_respects_max_distance(self):
        """~167m north of the midpoint is too far for the default 150m"""
        segments = [make_segment("205:0:0")]

        assert snap_to_segment(41.1515, -8.61, "205", 0, segments) is None
        assert snap_to_segment(41.1515, -8.61, "205", 0, segments, max_dist_m=200) == "205:0:0"

    def test_tie_goes_to_first_segment(self):
        segments = [make_segment("205:0:0"), make_segment("205:0:1", index=1)]
        assert snap_to_segment(41.15, -8.61, "205", 0, segments) == "205:0:0"


class TestFindNearestStop:
    """Tests for find_nearest_stop"""

    def test_within_radius(self):
        stops = [
            StopDef("205", 0, 0, "S0", 41.15, -8.61, "Bolhão"),
            StopDef("205", 0, 1, "S1", 41.15, -8.605, "Trindade"),
        ]
        stop = find_nearest_stop(41.1502, -8.6101, "205", 0, stops)

        assert stop.stop_id == "S0"
        assert stop.stop_name == "Bolhão"

    def test_outside_radius(self):
        stops = [StopDef("205", 0, 0, "S0", 41.15, -8.61)]
        assert find_nearest_stop(41.151, -8.61, "205", 0, stops) is None

    def test_ignores_other_routes(self):
        stops = [StopDef("500", 0, 0, "S0", 41.15, -8.61)]
        assert find_nearest_stop(41.15, -8.61, "205", 0, stops) is None

    def test_filters_direction_when_known(self):
        """A stop of the opposite direction is never a candidate"""
        stops = [StopDef("205", 1, 0, "S0", 41.15, -8.61)]

        assert find_nearest_stop(41.15, -8.61, "205", 0, stops) is None
        assert find_nearest_stop(41.15, -8.61, "205", None, stops).stop_id == "S0"

    def test_unknown_direction_matches_either(self):
        stops = [
            StopDef("205", 0, 0, "S0", 41.15, -8.605),
            StopDef("205", 1, 0, "S1", 41.15, -8.61),
        ]

        assert find_nearest_stop(41.15, -8.6101, "205", None, stops).stop_id == "S1"
        assert find_nearest_stop(41.15, -8.6101, "205", 0, stops) is None

    def test_same_direction_preferred_over_closer_opposite(self):
        stops = [
            StopDef("205", 1, 0, "S1", 41.15, -8.61),
            StopDef("205", 0, 0, "S0", 41.15, -8.6105),
        ]
        assert find_nearest_stop(41.15, -8.61, "205", 0, stops).stop_id == "S0"


class TestRouteIndex:
    """Tests for RouteIndex"""

    def test_buckets_by_route_in_input_order(self):
        segments = [
            make_segment("205:0:0"),
            make_segment("500:0:0", route="500"),
            make_segment("205:0:1", index=1),
        ]
        index = RouteIndex.for_segments(segments)

        assert len(index) == 3
        assert [s.id for s in index.candidates("205")] == ["205:0:0", "205:0:1"]
        assert index.candidates("999") == []

    def test_nearest_matches_flat_list_lookup(self):
        """Indexed lookups agree with snap_to_segment over the full list"""
        segments = split_into_segments("205", 0, ROUTE_COORDS) + split_into_segments(
            "205", 1, list(reversed(ROUTE_COORDS))
        )
        index = RouteIndex.for_segments(segments)

        for lon, lat in ROUTE_COORDS:
            for direction_id in (0, 1, None):
                seg = index.nearest(lat, lon + 0.0003, "205", direction_id, 150)
                expected = snap_to_segment(lat, lon + 0.0003, "205", direction_id, segments)
                assert (seg.id if seg else None) == expected

    def test_tie_goes_to_first_item(self):
        index = RouteIndex.for_segments([make_segment("205:0:0"), make_segment("205:0:1", index=1)])
        assert index.nearest(41.15, -8.61, "205", 0, 150).id == "205:0:0"

    def test_unknown_route(self):
        index = RouteIndex.for_stops([StopDef("205", 0, 0, "S0", 41.15, -8.61)])
        assert index.nearest(41.15, -8.61, "999", 0, 80) is None


class TestHaversineDistances:
    """Tests for the vectorized haversine_distances"""

    def test_matches_scalar_version(self):
        lats = np.array([41.15, 41.16, 41.2])
        lons = np.array([-8.61, -8.60, -8.5])

        distances = haversine_distances(41.15, -8.61, lats, lons)

        for d, lat, lon in zip(distances, lats, lons):
            assert d == pytest.approx(haversine_distance(41.15, -8.61, lat, lon), abs=1e-6)
