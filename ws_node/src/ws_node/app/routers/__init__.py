"""HTTP routers of the workspace node: realtime logs, files, git, internal."""
