from __future__ import annotations

"""
Caller authentication for the internal surface of the workspace node.

Overview
- The reverse proxy (nginx auth_request) asks the node which host port serves a
  user's preview. That sub-request is authenticated with a shared secret sent as
  a header (default X-WS-Token) or query parameter (default token).
- When no secret is configured the lookup degrades to same-host callers only
  (loopback source address).
- The rest of /workspace/internal/* is limited to loopback plus an explicit
  allow-list of control-plane addresses.

Comparison of secrets is constant-time (hmac.compare_digest).
"""

import enum
import hmac
from typing import Iterable, Optional

__all__ = [
    "LOOPBACK_ADDRESSES",
    "ProxyAuth",
    "is_loopback",
    "is_allowed_internal_caller",
    "authenticate_proxy_request",
]

# Servlet-style IPv6 loopback spelling included: some proxies forward it verbatim
LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1", "0:0:0:0:0:0:0:1"})


class ProxyAuth(str, enum.Enum):
    OK = "OK"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"


def is_loopback(remote_addr: Optional[str]) -> bool:
    return bool(remote_addr) and remote_addr.strip() in LOOPBACK_ADDRESSES


def is_allowed_internal_caller(remote_addr: Optional[str], allowed: Iterable[str] = ()) -> bool:
    """
    Loopback is always allowed; anything else must be listed explicitly.
    """
    if not remote_addr or not remote_addr.strip():
        return False
    if is_loopback(remote_addr):
        return True
    return remote_addr.strip() in {a.strip() for a in allowed if a and a.strip()}


def _token_matches(required: str, presented: Optional[str]) -> bool:
    if presented is None:
        return False
    return hmac.compare_digest(required.encode("utf-8"), presented.encode("utf-8"))


def authenticate_proxy_request(
    required_token: Optional[str],
    header_token: Optional[str],
    query_token: Optional[str],
    remote_addr: Optional[str],
) -> ProxyAuth:
    """
    Decide whether a port lookup may proceed.

    - secret configured: header or query value must match exactly, from any address
    - no secret: the caller must be loopback
    """
    if required_token:
        if _token_matches(required_token, header_token) or _token_matches(required_token, query_token):
            return ProxyAuth.OK
        return ProxyAuth.UNAUTHORIZED
    if is_loopback(remote_addr):
        return ProxyAuth.OK
    return ProxyAuth.FORBIDDEN
