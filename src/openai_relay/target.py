"""Working out where a request should go upstream.

The inbound path looks like ``/api/openai/v1/chat/completions?x=1``. We drop
the routing prefix and hang what's left off the configured base URL.
"""

import re
from dataclasses import dataclass

from .config import DEFAULT_PROTOCOL, OPENAI_URL

# Routing prefix the relay is mounted under
PROXY_PREFIX = "/api/openai/"

_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


@dataclass(frozen=True)
class UpstreamTarget:
    """An absolute upstream location.

    ``host`` is everything between ``scheme://`` and the request path, so a
    base URL with its own path prefix (``https://gw.example/openai``) keeps it.
    """

    scheme: str
    host: str
    path: str

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.path}"


def normalize_base_url(base_url: str | None, protocol: str | None = None) -> str:
    """Give the base URL a scheme and drop one trailing slash."""
    base = base_url or OPENAI_URL
    if not _SCHEME.match(base):
        base = f"{protocol or DEFAULT_PROTOCOL}://{base}"
    if base.endswith("/"):
        base = base[:-1]
    return base


def strip_prefix(path: str, prefix: str = PROXY_PREFIX) -> str:
    """Remove the first occurrence of the routing prefix, wherever it is."""
    return path.replace(prefix, "", 1)


def resolve_target(base_url: str | None, protocol: str | None, path: str) -> UpstreamTarget:
    """Combine configuration and the inbound path+query into a target."""
    base = normalize_base_url(base_url, protocol)
    scheme, _, host = base.partition("://")
    return UpstreamTarget(scheme=scheme, host=host, path=strip_prefix(path))
