"""
Rendezvous — Domain error taxonomy.

Services raise these typed errors; the HTTP boundary (``app.main``) maps each
``kind`` to a status code and a user-facing message.  Services never build
response strings themselves.
"""

from __future__ import annotations

from typing import Any


class RendezvousError(Exception):
    """Base class for every error the core surfaces to callers."""

    status_code: int = 500
    kind: str = "server_error"

    def __init__(self, kind: str | None = None, **context: Any) -> None:
        if kind is not None:
            self.kind = kind
        self.context = context
        super().__init__(self.kind)


# ── Top-level categories ──────────────────────────────────────────────────────

class ValidationError(RendezvousError):
    status_code = 400
    kind = "validation_error"


class AuthenticationError(RendezvousError):
    status_code = 401
    kind = "authentication_error"


class AuthorizationError(RendezvousError):
    status_code = 403
    kind = "forbidden"


class NotFoundError(RendezvousError):
    status_code = 404
    kind = "not_found"


class ConflictError(RendezvousError):
    status_code = 409
    kind = "conflict"


class RateLimitError(RendezvousError):
    status_code = 429
    kind = "rate_limited"


class DeliveryFailed(RendezvousError):
    """The external notifier could not deliver a verification code."""

    status_code = 500
    kind = "delivery_failed"

    def __init__(self, unconfigured: bool = False, **context: Any) -> None:
        super().__init__(
            "delivery_unavailable" if unconfigured else "delivery_failed", **context
        )
        if unconfigured:
            self.status_code = 503


class ServerError(RendezvousError):
    status_code = 500
    kind = "server_error"


# ── Geo ───────────────────────────────────────────────────────────────────────

class InvalidCoordinate(ValidationError):
    kind = "invalid_coordinate"


class LocationUnset(ValidationError):
    kind = "location_unset"


# ── Verification ──────────────────────────────────────────────────────────────

class AlreadyRegistered(ConflictError):
    kind = "already_registered"


class AlreadyVerified(ConflictError):
    kind = "already_verified"


class NotRegistered(NotFoundError):
    kind = "not_registered"


class NotVerified(ValidationError):
    kind = "not_verified"


class InvalidCode(ValidationError):
    kind = "invalid_code"


class CodeExpired(ValidationError):
    kind = "code_expired"


class InvalidRefreshToken(AuthenticationError):
    kind = "invalid_refresh_token"


# ── Matching ──────────────────────────────────────────────────────────────────

class SelfMatch(ValidationError):
    kind = "self_match"


class TargetUnavailable(NotFoundError):
    kind = "target_unavailable"


class DuplicatePending(ConflictError):
    kind = "duplicate_pending"


class AlreadyResolved(ConflictError):
    kind = "already_resolved"


class MatchExpired(ConflictError):
    kind = "match_expired"


Forbidden = AuthorizationError
