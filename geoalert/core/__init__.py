"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    database    — async SQLAlchemy engine handle
    middleware  — request logging / correlation IDs
    health      — health check aggregation
"""
