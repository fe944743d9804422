from __future__ import annotations

"""
Port Gate: read-only port lookup for the reverse proxy.

nginx calls this on (nearly) every preview request through auth_request, so it
must stay cheap and free of side effects beyond the activity touch: it never
provisions or starts a workspace, it only reads workspace-meta.json.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from ws_node.app.security import ProxyAuth, authenticate_proxy_request
from ws_node.app.workspaces.core import ActivityTracker
from ws_node.app.workspaces.run_meta import WorkspaceMetaStore

__all__ = [
    "PortLookupStatus",
    "PortLookup",
    "PortGate",
]

logger = logging.getLogger("workspace_node")


class PortLookupStatus(str, enum.Enum):
    OK = "OK"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class PortLookup:
    status: PortLookupStatus
    port: Optional[int] = None


class PortGate:
    def __init__(
        self,
        meta_store: WorkspaceMetaStore,
        activity: ActivityTracker,
        required_token: Optional[str] = None,
    ) -> None:
        self.meta_store = meta_store
        self.activity = activity
        self.required_token = required_token

    def lookup_port(
        self,
        user_id: Optional[int],
        header_token: Optional[str] = None,
        query_token: Optional[str] = None,
        remote_addr: Optional[str] = None,
    ) -> PortLookup:
        auth = authenticate_proxy_request(self.required_token, header_token, query_token, remote_addr)
        if auth == ProxyAuth.UNAUTHORIZED:
            logger.warning(
                "nginx port unauthorized: userId=%s remoteAddr=%s hasHeader=%s hasParam=%s",
                user_id, remote_addr, bool(header_token), bool(query_token),
            )
            return PortLookup(PortLookupStatus.UNAUTHORIZED)
        if auth == ProxyAuth.FORBIDDEN:
            return PortLookup(PortLookupStatus.FORBIDDEN)
        if user_id is None:
            return PortLookup(PortLookupStatus.NOT_FOUND)

        # preview traffic keeps the workspace alive; the touch is memory-only
        self.activity.touch(user_id)
        port = self.meta_store.host_port(user_id)
        if port is None:
            return PortLookup(PortLookupStatus.NOT_FOUND)
        return PortLookup(PortLookupStatus.OK, port)
