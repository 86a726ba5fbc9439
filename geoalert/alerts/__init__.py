"""
alerts — Alert domain logic.

Modules:
    models          — Alert, User, NotificationRecord and their enums
    validity        — computed validity window vs stored status
    matching        — geo-radius matching of alerts and users
    dispatch        — exactly-once notification fan-out
    sweep           — expiry sweep
    alert_service   — facade used by the HTTP layer and the jobs
    channels/       — web push and email notifiers
"""
