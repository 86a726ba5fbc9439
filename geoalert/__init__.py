"""
geoalert — geo-radius disaster alert matching and notification dispatch.

Sub-packages:
    core        — config, logging, errors, database, middleware, health
    spatial     — great-circle distance and radius membership
    alerts      — data model, validity, matching, dispatch, expiry sweep
    storage     — alert/user/notification stores (in-memory + SQLAlchemy)
    ingestion   — external alert sources and the dedup/upsert pipeline
    jobs        — periodic ingestion and sweep runs
    api         — FastAPI routes and schemas
"""
