"""
storage — Persistence behind narrow store interfaces.

Modules:
    base    — AlertStore / UserStore / NotificationLedger contracts, StoreBundle
    memory  — in-process implementation (tests, local development)
    sql     — SQLAlchemy async implementation (SQLite / PostgreSQL)
"""
