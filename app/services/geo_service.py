"""
Rendezvous — Geospatial index and great-circle math.

Answers "who is within radius R of point P" against the persisted user
locations and provides the geometry the matching flow needs:

  - Coordinate validation and the (0, 0) "never located" sentinel
  - Haversine distance (R = 6,371,000 m)
  - Spherical midpoint along the great circle joining two points
  - Radius clamping to endpoint-specific bounds

Proximity lookups use a bounding-box range scan over the indexed
``(latitude, longitude)`` columns, then refine with exact haversine distance
and sort by it.  The durable ``is_online`` flag is the only presence signal
consulted here; in-memory presence is never read.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import and_, not_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InvalidCoordinate, LocationUnset, NotFoundError
from app.models.user import User
from app.utils.clock import utcnow

logger = structlog.get_logger("rendezvous.geo_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

EARTH_RADIUS_M = 6_371_000


@dataclass(frozen=True)
class NearbyUser:
    user: User
    distance_m: float


# ──────────────────────────────────────────────────────────────────────────────
# Pure geometry
# ──────────────────────────────────────────────────────────────────────────────

def validate_coordinate(lat: float, lng: float) -> tuple[float, float]:
    """Return ``(lat, lng)`` as floats or raise ``InvalidCoordinate``."""
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError) as exc:
        raise InvalidCoordinate(lat=lat, lng=lng) from exc

    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinate(lat=lat, lng=lng)
    if not -90.0 <= lat_f <= 90.0 or not -180.0 <= lng_f <= 180.0:
        raise InvalidCoordinate(lat=lat_f, lng=lng_f)
    return lat_f, lng_f


def is_unset_location(lat: float, lng: float) -> bool:
    return lat == 0.0 and lng == 0.0


def clamp_radius(radius_m: float, min_m: float, max_m: float) -> float:
    return max(float(min_m), min(float(max_m), float(radius_m)))


def haversine_distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in metres."""
    lat1, lng1, lat2, lng2 = map(math.radians, (lat1, lng1, lat2, lng2))
    dlat = lat2 - lat1
    dlng = lng2 - lng1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def great_circle_midpoint(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> tuple[float, float]:
    """Point halfway along the great circle from (lat1, lng1) to (lat2, lng2).

    Both points are projected to unit vectors and the bearing of their sum is
    taken with ``atan2``, which stays correct near the poles and across the
    antimeridian where averaging degrees does not.  The returned longitude is
    normalised to [-180, 180).
    """
    phi1, lam1, phi2, lam2 = map(math.radians, (lat1, lng1, lat2, lng2))
    dlam = lam2 - lam1

    bx = math.cos(phi2) * math.cos(dlam)
    by = math.cos(phi2) * math.sin(dlam)

    phi3 = math.atan2(
        math.sin(phi1) + math.sin(phi2),
        math.sqrt((math.cos(phi1) + bx) ** 2 + by ** 2),
    )
    lam3 = lam1 + math.atan2(by, math.cos(phi1) + bx)

    lat3 = math.degrees(phi3)
    lng3 = (math.degrees(lam3) + 540.0) % 360.0 - 180.0
    return lat3, lng3


def bounding_box(
    lat: float, lng: float, radius_m: float
) -> tuple[float, float, float | None, float | None]:
    """Lat/lng box enclosing the circle of ``radius_m`` around a point.

    Uses the same sphere as ``haversine_distance_m`` so every point the
    haversine check accepts lies inside the box.  The longitude half-width is
    the widest point of the circle, ``asin(sin(d) / cos(lat))``, which sits
    poleward of the centre's parallel.

    Longitude bounds are ``None`` when the box would wrap the antimeridian or
    reach a pole; callers then skip the longitude filter.
    """
    angular = radius_m / EARTH_RADIUS_M
    dlat = math.degrees(angular)
    min_lat = max(-90.0, lat - dlat)
    max_lat = min(90.0, lat + dlat)

    cos_lat = math.cos(math.radians(lat))
    sin_angular = math.sin(angular)
    if angular >= math.pi / 2 or sin_angular >= cos_lat or max_lat >= 90.0 or min_lat <= -90.0:
        return min_lat, max_lat, None, None

    dlng = math.degrees(math.asin(sin_angular / cos_lat))
    if lng - dlng < -180.0 or lng + dlng > 180.0:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, lng - dlng, lng + dlng


# ──────────────────────────────────────────────────────────────────────────────
# Store-backed index
# ──────────────────────────────────────────────────────────────────────────────

class GeoIndex:
    """Proximity queries and location writes over the user store."""

    async def find_nearby(
        self,
        db_session: AsyncSession,
        lat: float,
        lng: float,
        radius_m: float,
        exclude_id: uuid.UUID | None = None,
        online_only: bool = True,
    ) -> list[NearbyUser]:
        """Return users within ``radius_m`` of the centre, nearest first.

        The excluded user and anyone still at the unset sentinel are never
        returned.  A query centred on the sentinel itself has no meaning and
        yields no results.
        """
        lat, lng = validate_coordinate(lat, lng)
        log = logger.bind(lat=lat, lng=lng, radius_m=radius_m)

        if is_unset_location(lat, lng):
            log.info("find_nearby_unset_center")
            return []

        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_m)

        stmt = select(User).where(
            User.sms_verified.is_(True),
            User.latitude.between(min_lat, max_lat),
            not_(and_(User.latitude == 0.0, User.longitude == 0.0)),
        )
        if min_lng is not None and max_lng is not None:
            stmt = stmt.where(User.longitude.between(min_lng, max_lng))
        if exclude_id is not None:
            stmt = stmt.where(User.id != exclude_id)
        if online_only:
            stmt = stmt.where(User.is_online.is_(True))

        result = await db_session.execute(stmt)
        candidates = result.scalars().all()

        nearby: list[NearbyUser] = []
        for user in candidates:
            distance = haversine_distance_m(lat, lng, user.latitude, user.longitude)
            if distance <= radius_m:
                nearby.append(NearbyUser(user=user, distance_m=distance))

        nearby.sort(key=lambda n: n.distance_m)
        log.info(
            "find_nearby_complete",
            candidates=len(candidates),
            count=len(nearby),
        )
        return nearby

    async def update_location(
        self,
        db_session: AsyncSession,
        user_id: uuid.UUID,
        lat: float,
        lng: float,
        address: str | None = None,
        mark_online: bool = False,
    ) -> User:
        """Persist a new position (and ``last_seen``) for ``user_id``."""
        lat, lng = validate_coordinate(lat, lng)

        user = await db_session.get(User, user_id)
        if user is None:
            raise NotFoundError("user_not_found", user_id=str(user_id))

        user.latitude = lat
        user.longitude = lng
        user.last_seen = utcnow()
        if address:
            user.address = address
        if mark_online:
            user.is_online = True

        await db_session.flush()
        logger.debug("location_updated", user_id=str(user_id))
        return user

    async def get_location(
        self, db_session: AsyncSession, user_id: uuid.UUID
    ) -> tuple[float, float, str]:
        user = await db_session.get(User, user_id)
        if user is None:
            raise NotFoundError("user_not_found", user_id=str(user_id))
        if not user.has_location:
            raise LocationUnset(user_id=str(user_id))
        return user.latitude, user.longitude, user.address
