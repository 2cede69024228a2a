"""Unit tests for map display decoration."""
import pytest

from app.errors import LocationUnset
from app.services.map_service import (
    DEFAULT_BIO,
    MapService,
    default_avatar,
    map_config,
)
from tests.conftest import SHINJUKU, TOKYO


class TestMapConfig:

    def test_static_block(self, settings):
        config = map_config(settings)
        assert config["defaultCenter"] == {"lat": 35.6762, "lng": 139.6503}
        assert config["minRadius"] == settings.MAP_MIN_RADIUS_M
        assert set(config["markerStyles"]) == {"male", "female", "other"}
        assert {"label": "5km", "value": 5_000} in config["radiusOptions"]

    def test_default_avatar_falls_back(self):
        assert default_avatar("unknown") == default_avatar("other")


class TestMapData:

    @pytest.mark.asyncio
    async def test_decorates_nearby_users(self, session, make_user, settings):
        viewer = await make_user("Viewer", location=TOKYO)
        other = await make_user("Ben", location=SHINJUKU, gender="male")

        data = await MapService(settings=settings).get_map_data(session, viewer)

        assert data["count"] == 1
        assert data["center"] == {"lat": TOKYO[0], "lng": TOKYO[1]}
        [entry] = data["users"]
        assert entry["id"] == str(other.id)
        assert entry["bio"] == DEFAULT_BIO
        assert entry["profilePhoto"] == default_avatar("male")
        assert entry["marker"] == {"color": "#4A90E2", "icon": "male", "size": "large"}
        assert 5_000 < entry["distance"] < 5_500

    @pytest.mark.asyncio
    async def test_radius_clamped(self, session, make_user, settings):
        viewer = await make_user("Viewer", location=TOKYO)
        data = await MapService(settings=settings).get_map_data(session, viewer, radius_m=10)
        assert data["radius"] == settings.MAP_MIN_RADIUS_M

    @pytest.mark.asyncio
    async def test_unlocated_viewer_needs_centre(self, session, make_user, settings):
        viewer = await make_user("Viewer", location=(0.0, 0.0))
        service = MapService(settings=settings)

        with pytest.raises(LocationUnset):
            await service.get_map_data(session, viewer)

        data = await service.get_map_data(session, viewer, lat=TOKYO[0], lng=TOKYO[1])
        assert data["count"] == 0
