"""
Rendezvous — Main API Router

Aggregates all sub-routers under a single prefix so that ``app.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import auth, map, matching, realtime, users

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["Auth"])
router.include_router(users.router, prefix="/users", tags=["Users"])
router.include_router(matching.router, prefix="/matching", tags=["Matching"])
router.include_router(map.router, prefix="/map", tags=["Map"])
router.include_router(realtime.router, prefix="/realtime", tags=["Realtime"])
