"""Exception taxonomy for the QR redirect service.

Services raise these; ``app.routes`` maps them to HTTP responses. Failures of
non-critical subsystems (cache, analytics, rate-limit counters) are never raised
past their own component; they are logged where they happen.

Mapping
=======
::
    ShortCodeNotFoundError      → 404
    ShortCodeInactiveError      → 410 (fixed HTML page)
    InvalidRedirectError        → 400
    StoreUnavailableError       → 500
    ShortCodeAllocationError    → 503
    InvalidApiKeyError          → 401
    DomainNotFoundError         → 404
    DomainConflictError         → 409
    InvalidDomainError          → 400
    HostingProviderError        → 502
"""

__all__ = [
    "DomainConflictError",
    "DomainNotFoundError",
    "HostingProviderError",
    "InvalidApiKeyError",
    "InvalidDomainError",
    "InvalidRedirectError",
    "QRLinkError",
    "ShortCodeAllocationError",
    "ShortCodeInactiveError",
    "ShortCodeNotFoundError",
    "StoreUnavailableError",
]


class QRLinkError(Exception):
    """Base class for all service errors."""


class ShortCodeNotFoundError(QRLinkError):
    def __init__(self, short_code: str):
        super().__init__(f"Short code '{short_code}' not found")
        self.short_code = short_code


class ShortCodeInactiveError(QRLinkError):
    def __init__(self, short_code: str):
        super().__init__(f"Short code '{short_code}' is inactive")
        self.short_code = short_code


class InvalidRedirectError(QRLinkError):
    """Destination is not an http(s) URL; never redirect to it."""

    def __init__(self, short_code: str, destination_url: str):
        super().__init__(f"Destination for '{short_code}' failed scheme validation")
        self.short_code = short_code
        self.destination_url = destination_url


class StoreUnavailableError(QRLinkError):
    """The authoritative store could not answer."""


class ShortCodeAllocationError(QRLinkError):
    """No unused short code found within the configured attempts."""


class InvalidApiKeyError(QRLinkError):
    pass


class DomainNotFoundError(QRLinkError):
    pass


class DomainConflictError(QRLinkError):
    pass


class InvalidDomainError(QRLinkError):
    pass


class HostingProviderError(QRLinkError):
    """Hosting provider unreachable or answered with an error status."""
