"""
Workspace Node (FastAPI) - README-lite

Overview
- One node runs per workspace host. Every user owns a directory under
  WORKSPACE_HOST_ROOT holding their app sources, the run directory written by
  the process supervisor and the workspace record written by the provisioner.
- The node does not start builds or previews and never provisions containers.
  It reads what the supervisor and provisioner leave on disk:
    <hostRoot>/<userId>/run/current.json        current run (appId, type, pid, logPath, finishedAt, exitCode)
    <hostRoot>/<userId>/run/run-<op>-<appId>-<epochMillis>.log
    <hostRoot>/<userId>/workspace-meta.json     hostPort of the preview container
    <hostRoot>/<userId>[/<appsDirName>]/<appId>/...

Key Design Points
- Logs: BUILD logs of an unfinished build are only served as a tail; once the
  build finished the whole file is returned.
- Files: saves use optimistic locking on lastModifiedMs; 0/-1 means "must not exist".
- App deletion: cleanup is best-effort and never fails; directories that
  cannot be deleted are renamed to <appId>.deleted-<epochMillis>.
- Activity: every user request and preview hit refreshes the user's last-seen
  time; a janitor stops idle runs and containers.

Quickstart (local)
  $ python -m venv ./venv
  $ source ./venv/bin/activate
  $ pip install .
  $ WORKSPACE_HOST_ROOT=/data/funai/workspaces ws-node ws_node.app.main:app --host 127.0.0.1 --port 8090
- Health check (unauthenticated): GET http://127.0.0.1:8090/health

Authentication
- User routes: API key in X-API-Key (WORKSPACE_API_KEY / WORKSPACE_API_KEYS);
  disabled when no key is configured.
- nginx port lookup: WORKSPACE_NGINX_AUTH_TOKEN via X-WS-Token or ?token=;
  without a token only loopback callers are answered.
- Maintenance routes: loopback and WORKSPACE_INTERNAL_ALLOWED_IPS.

Core Endpoints (summary)
- GET  /workspace/realtime/log?userId&appId&type&tailBytes   -> { isFinish?, log }
- GET  /workspace/realtime/log/raw?userId&appId&type&tailBytes
- POST /workspace/realtime/log/clear?userId&appId&type
- GET  /workspace/files/content?userId&appId&path
- POST /workspace/files/content  { userId, appId, path, content, expectedLastModifiedMs, forceWrite, createParents }
- POST /workspace/files/mkdir | delete | move
- GET  /workspace/files/tree | download-file
- GET  /workspace/git/status, POST /workspace/git/ensure
- GET  /workspace/internal/nginx/port?userId               -> 204 + X-WS-Port
- POST /workspace/internal/maintenance/app-deleted?userId&appId
- GET  /workspace/internal/activity

Version
- Matches pyproject: 0.1.0
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
