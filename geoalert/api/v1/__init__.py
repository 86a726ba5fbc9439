"""v1 — alert and notification routers."""
