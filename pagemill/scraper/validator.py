"""URL validation run before every network call (SSRF defence).

``validate_url`` raises; ``check_url`` returns a :class:`ValidationResult`
for callers that only want to report.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from pagemill.errors import (
    DisallowedProtocol,
    InternalNetworkBlocked,
    InvalidFormat,
    TooLong,
    ValidationError,
)

MAX_URL_LENGTH = 2048
ALLOWED_SCHEMES = ("http", "https")

_BLOCKED_HOSTNAMES = {
    "localhost",
    "metadata.google.internal",
    "metadata",
}

_BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    url: str
    error_type: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "url": self.url,
            "errorType": self.error_type,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_blocked_host(hostname: str) -> bool:
    host = hostname.strip("[]").rstrip(".").lower()
    if host in _BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return any(address in network for network in _BLOCKED_NETWORKS if network.version == address.version)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_url(url: str) -> str:
    """Return the stripped *url* if it is safe to fetch.

    Raises:
        TooLong: More than 2048 characters.
        InvalidFormat: Not parseable as an absolute URL with a host.
        DisallowedProtocol: Scheme other than http/https.
        InternalNetworkBlocked: Host is localhost, loopback, link-local,
            a cloud metadata host or in a private range.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidFormat("URL must be a non-empty string")
    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        raise TooLong(f"URL exceeds {MAX_URL_LENGTH} characters")

    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        parts.port  # raises ValueError on a malformed port
    except ValueError as exc:
        raise InvalidFormat(f"Invalid URL format: {exc}") from exc

    if not parts.scheme or "://" not in url:
        raise InvalidFormat("Invalid URL format")
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise DisallowedProtocol(
            f"Only HTTP and HTTPS protocols are allowed, got {parts.scheme!r}"
        )
    if not hostname:
        raise InvalidFormat("URL has no hostname")
    if _is_blocked_host(hostname):
        raise InternalNetworkBlocked("Access to internal networks is not allowed")
    return url


def check_url(url: str) -> ValidationResult:
    """Non-raising variant of :func:`validate_url`."""
    try:
        clean = validate_url(url)
    except ValidationError as exc:
        return ValidationResult(
            valid=False,
            url=url if isinstance(url, str) else "",
            error_type=exc.error_type,
            error=exc.message,
        )
    return ValidationResult(valid=True, url=clean)
