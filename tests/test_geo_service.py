"""Unit tests for the geo index and great-circle helpers."""
import math

import pytest

from app.errors import InvalidCoordinate, LocationUnset
from app.services.geo_service import (
    EARTH_RADIUS_M,
    GeoIndex,
    bounding_box,
    clamp_radius,
    great_circle_midpoint,
    haversine_distance_m,
    validate_coordinate,
)
from tests.conftest import SHINJUKU, TOKYO


def _destination(lat, lng, bearing_deg, metres):
    """Point ``metres`` along the great circle leaving (lat, lng) at ``bearing_deg``."""
    phi1, lam1, theta = map(math.radians, (lat, lng, bearing_deg))
    d = metres / EARTH_RADIUS_M
    phi2 = math.asin(
        math.sin(phi1) * math.cos(d) + math.cos(phi1) * math.sin(d) * math.cos(theta)
    )
    lam2 = lam1 + math.atan2(
        math.sin(theta) * math.sin(d) * math.cos(phi1),
        math.cos(d) - math.sin(phi1) * math.sin(phi2),
    )
    return math.degrees(phi2), math.degrees(lam2)


def _along_parallel(lat, lng, metres):
    """Point on the same parallel, east of (lat, lng), ``metres`` away."""
    d = metres / EARTH_RADIUS_M
    dlng = 2 * math.asin(math.sin(d / 2) / math.cos(math.radians(lat)))
    return lat, lng + math.degrees(dlng)


class TestHaversine:
    """Great-circle distance."""

    def test_zero_distance(self):
        assert haversine_distance_m(*TOKYO, *TOKYO) == 0.0

    def test_one_degree_of_latitude(self):
        d = haversine_distance_m(0.0, 10.0, 1.0, 10.0)
        assert abs(d - 111_195) < 50

    def test_symmetric(self):
        assert math.isclose(
            haversine_distance_m(*TOKYO, *SHINJUKU),
            haversine_distance_m(*SHINJUKU, *TOKYO),
        )

    def test_tokyo_to_shinjuku(self):
        # ~5.2 km between the two fixtures
        d = haversine_distance_m(*TOKYO, *SHINJUKU)
        assert 5_000 < d < 5_500


class TestMidpoint:
    """Spherical midpoint along the great circle."""

    def test_tokyo_midpoint(self):
        lat, lng = great_circle_midpoint(*TOKYO, *SHINJUKU)
        assert abs(lat - 35.685) < 1e-3
        assert abs(lng - 139.677) < 1e-3

    def test_equidistant(self):
        lat, lng = great_circle_midpoint(*TOKYO, *SHINJUKU)
        d1 = haversine_distance_m(*TOKYO, lat, lng)
        d2 = haversine_distance_m(*SHINJUKU, lat, lng)
        assert abs(d1 - d2) < 1.0

    def test_crosses_antimeridian(self):
        """Averaging degrees would land near 0°; the great circle stays near 180°."""
        lat, lng = great_circle_midpoint(0.0, 179.0, 0.0, -179.0)
        assert abs(lat) < 1e-9
        assert abs(abs(lng) - 180.0) < 1e-6

    def test_longitude_normalised(self):
        _, lng = great_circle_midpoint(10.0, 170.0, 10.0, -160.0)
        assert -180.0 <= lng < 180.0


class TestValidation:
    """Coordinate validation and radius clamping."""

    def test_valid(self):
        assert validate_coordinate("35.5", 139) == (35.5, 139.0)

    @pytest.mark.parametrize(
        "lat,lng",
        [(91, 0), (-91, 0), (0, 181), (0, -180.5), (float("nan"), 0), (None, 0), ("abc", 1)],
    )
    def test_invalid(self, lat, lng):
        with pytest.raises(InvalidCoordinate):
            validate_coordinate(lat, lng)

    def test_clamp(self):
        assert clamp_radius(50, 100, 1000) == 100
        assert clamp_radius(5000, 100, 1000) == 1000
        assert clamp_radius(500, 100, 1000) == 500

    @pytest.mark.parametrize("centre", [TOKYO, (60.0, 10.0), (-45.0, -70.0)])
    def test_bounding_box_contains_circle(self, centre):
        radius = 200_000
        min_lat, max_lat, min_lng, max_lng = bounding_box(*centre, radius)

        for bearing in range(0, 360, 5):
            lat, lng = _destination(*centre, bearing, radius * 0.999)
            assert min_lat <= lat <= max_lat, bearing
            assert min_lng <= lng <= max_lng, bearing

    def test_bounding_box_wraps_antimeridian(self):
        _, _, min_lng, max_lng = bounding_box(0.0, 179.99, 10_000)
        assert min_lng is None and max_lng is None


class TestFindNearby:
    """Store-backed proximity search."""

    @pytest.mark.asyncio
    async def test_sorted_and_filtered(self, session, make_user):
        viewer = await make_user("Viewer", location=TOKYO)
        near = await make_user("Near", location=(35.6800, 139.6550))
        far = await make_user("Far", location=SHINJUKU)
        await make_user("Offline", location=(35.6770, 139.6510), is_online=False)
        await make_user("Unverified", location=(35.6770, 139.6510), sms_verified=False)
        await make_user("Nowhere", location=(0.0, 0.0))
        await make_user("Osaka", location=(34.6937, 135.5023))

        results = await GeoIndex().find_nearby(
            session, *TOKYO, 10_000, exclude_id=viewer.id
        )

        assert [r.user.id for r in results] == [near.id, far.id]
        assert results[0].distance_m < results[1].distance_m

    @pytest.mark.asyncio
    async def test_users_at_edge_of_radius_returned(self, session, make_user):
        """Users just inside the radius survive the bounding-box pre-filter."""
        north = _destination(35.0, 139.0, 0, 999)
        edge_north = await make_user("North", location=north)
        east = _along_parallel(60.0, 10.0, 199_900)
        edge_east = await make_user("East", location=east)
        assert haversine_distance_m(35.0, 139.0, *north) < 1_000
        assert haversine_distance_m(60.0, 10.0, *east) < 200_000

        index = GeoIndex()
        found_north = await index.find_nearby(session, 35.0, 139.0, 1_000)
        found_east = await index.find_nearby(session, 60.0, 10.0, 200_000)

        assert [r.user.id for r in found_north] == [edge_north.id]
        assert [r.user.id for r in found_east] == [edge_east.id]

    @pytest.mark.asyncio
    async def test_offline_included_when_requested(self, session, make_user):
        offline = await make_user("Offline", location=(35.6770, 139.6510), is_online=False)
        results = await GeoIndex().find_nearby(session, *TOKYO, 5_000, online_only=False)
        assert offline.id in [r.user.id for r in results]

    @pytest.mark.asyncio
    async def test_sentinel_centre_returns_nothing(self, session, make_user):
        await make_user("Nowhere", location=(0.0, 0.0))
        assert await GeoIndex().find_nearby(session, 0.0, 0.0, 100_000) == []

    @pytest.mark.asyncio
    async def test_update_and_get_location(self, session, make_user):
        user = await make_user("Mover", location=(0.0, 0.0))
        index = GeoIndex()

        with pytest.raises(LocationUnset):
            await index.get_location(session, user.id)

        await index.update_location(session, user.id, 35.0, 139.0, address="Shibuya")
        await session.commit()
        lat, lng, address = await index.get_location(session, user.id)
        assert (lat, lng, address) == (35.0, 139.0, "Shibuya")

    @pytest.mark.asyncio
    async def test_update_rejects_bad_coordinate(self, session, make_user):
        user = await make_user()
        with pytest.raises(InvalidCoordinate):
            await GeoIndex().update_location(session, user.id, 120.0, 0.0)
