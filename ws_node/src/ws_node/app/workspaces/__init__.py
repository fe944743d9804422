"""
Host-side workspace logic: layout, run records, logs, files, reclamation,
port lookup, supervisor adapters and the idle janitor. Nothing here imports
FastAPI routers.
"""
