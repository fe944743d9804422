"""
ws_node package

The workspace node: a per-host FastAPI service that serves run logs and app
files of user workspaces, answers preview port lookups for nginx and cleans up
after deleted applications. Importing the package does not import the FastAPI
app, so tooling can discover modules without side effects.

Public surface:
- __version__: string version of the package

To run the service with uvicorn (example):
    uvicorn ws_node.app.main:app --host 127.0.0.1 --port 8090
"""

from .app import __version__

__all__ = ["__version__"]
