"""
Rendezvous — Map display decoration.

Wraps ``GeoIndex`` proximity results with the presentation data a map client
needs: marker colours and icons per gender, default avatars, and a static
configuration block (default centre, zoom, radius bounds and presets).
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.errors import LocationUnset
from app.models.user import User
from app.services.geo_service import GeoIndex, clamp_radius, validate_coordinate

logger = structlog.get_logger("rendezvous.map_service")

# ──────────────────────────────────────────────────────────────────────────────
# Presentation tables
# ──────────────────────────────────────────────────────────────────────────────

DEFAULT_AVATARS: dict[str, str] = {
    "male": "https://randomuser.me/api/portraits/men/0.jpg",
    "female": "https://randomuser.me/api/portraits/women/0.jpg",
    "other": "https://randomuser.me/api/portraits/lego/0.jpg",
}

MARKER_COLORS: dict[str, str] = {
    "male": "#4A90E2",
    "female": "#E24A90",
    "other": "#50C878",
}

MARKER_ICONS: dict[str, str] = {
    "male": "male",
    "female": "female",
    "other": "person",
}

RADIUS_OPTIONS_M = (1_000, 5_000, 10_000, 25_000, 50_000, 100_000)

DEFAULT_BIO = "こんにちは！"


def default_avatar(gender: str) -> str:
    return DEFAULT_AVATARS.get(gender, DEFAULT_AVATARS["other"])


def marker_for(user: User) -> dict[str, str]:
    return {
        "color": MARKER_COLORS.get(user.gender, MARKER_COLORS["other"]),
        "icon": MARKER_ICONS.get(user.gender, MARKER_ICONS["other"]),
        "size": "large" if user.is_online else "medium",
    }


def map_config(settings: Settings | None = None) -> dict[str, Any]:
    """Static display configuration served to map clients."""
    settings = settings or get_settings()
    return {
        "defaultCenter": dict(settings.MAP_DEFAULT_CENTER),
        "defaultZoom": settings.MAP_DEFAULT_ZOOM,
        "minRadius": settings.MAP_MIN_RADIUS_M,
        "maxRadius": settings.MAP_MAX_RADIUS_M,
        "markerStyles": {
            gender: {"color": MARKER_COLORS[gender], "icon": MARKER_ICONS[gender], "size": "medium"}
            for gender in MARKER_COLORS
        },
        "mapSettings": {
            "showTraffic": False,
            "showTransit": False,
            "enableClustering": True,
            "clusterRadius": 50,
            "maxClusterRadius": 100,
        },
        "radiusOptions": [
            {"label": f"{value // 1000}km", "value": value} for value in RADIUS_OPTIONS_M
        ],
    }


class MapService:
    """Map-scoped proximity payloads built on top of the geo index."""

    def __init__(self, geo_index: GeoIndex | None = None, settings: Settings | None = None) -> None:
        self.geo_index = geo_index or GeoIndex()
        self.settings = settings or get_settings()

    async def get_map_data(
        self,
        db_session: AsyncSession,
        viewer: User,
        lat: float | None = None,
        lng: float | None = None,
        radius_m: float | None = None,
    ) -> dict[str, Any]:
        """Online users around a centre, decorated for map display.

        The centre defaults to the viewer's own position; a viewer who was
        never located must pass one explicitly.
        """
        if lat is None or lng is None:
            if not viewer.has_location:
                raise LocationUnset(user_id=str(viewer.id))
            lat, lng = viewer.latitude, viewer.longitude
        lat, lng = validate_coordinate(lat, lng)

        radius = clamp_radius(
            radius_m if radius_m is not None else self.settings.MAP_DEFAULT_RADIUS_M,
            self.settings.MAP_MIN_RADIUS_M,
            self.settings.MAP_MAX_RADIUS_M,
        )

        nearby = await self.geo_index.find_nearby(
            db_session, lat, lng, radius, exclude_id=viewer.id, online_only=True
        )

        users = []
        for entry in nearby:
            user = entry.user
            users.append(
                {
                    "id": str(user.id),
                    "name": user.name,
                    "gender": user.gender,
                    "profilePhoto": user.profile_photo or default_avatar(user.gender),
                    "bio": user.bio or DEFAULT_BIO,
                    "location": {"lat": user.latitude, "lng": user.longitude},
                    "distance": round(entry.distance_m),
                    "isOnline": user.is_online,
                    "lastSeen": user.last_seen.isoformat() if user.last_seen else None,
                    "matchCount": user.match_count,
                    "marker": marker_for(user),
                }
            )

        logger.info(
            "map_data_built",
            viewer_id=str(viewer.id),
            radius_m=radius,
            count=len(users),
        )
        return {
            "users": users,
            "center": {"lat": lat, "lng": lng},
            "radius": int(radius),
            "count": len(users),
        }
