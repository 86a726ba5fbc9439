"""
api — HTTP surface.

Modules:
    schemas   — pydantic request/response models (also the ingest document)
    deps      — FastAPI dependencies (service handle, admin gate)
    v1/       — versioned routers
"""
