"""Shared enums for the QR redirect service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "CacheStatus",
    "DeviceType",
    "DomainStatus",
    "HealthStatus",
    "RateLimitDecision",
    "RedirectOutcome",
    "RequestStatus",
]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"

    @classmethod
    def from_str(cls, value: str) -> "HealthStatus":
        """Safely parse from string, falling back to UNHEALTHY for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNHEALTHY


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    ERROR = "error"

    @classmethod
    def from_str(cls, value: str) -> "RequestStatus":
        """Safely parse from string, falling back to ERROR for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.ERROR


class CacheStatus(StrEnum):
    """Cache status values for metrics."""

    HIT = "true"
    MISS = "false"

    @classmethod
    def from_str(cls, value: str) -> "CacheStatus":
        """Safely parse from string, falling back to MISS for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.MISS


class RedirectOutcome(StrEnum):
    """Terminal result of one short-code resolution."""

    REDIRECTED = "redirected"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    INVALID_REDIRECT = "invalid_redirect"
    STORE_UNAVAILABLE = "store_unavailable"


class DeviceType(StrEnum):
    """Device classification stored on each scan event."""

    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    UNKNOWN = "unknown"

    @classmethod
    def from_str(cls, value: str) -> "DeviceType":
        """Safely parse from string, falling back to UNKNOWN for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class DomainStatus(StrEnum):
    """Custom domain verification states.

    ``unverified → verifying → verified``; ``verifying`` repeats while the
    hosting provider has not confirmed the DNS records.
    """

    UNVERIFIED = "unverified"
    VERIFYING = "verifying"
    VERIFIED = "verified"


class RateLimitDecision(StrEnum):
    """Rate limiter decision labels for metrics."""

    ALLOWED = "allowed"
    LIMITED = "limited"
    UNLIMITED = "unlimited"
    FAIL_OPEN = "fail_open"
