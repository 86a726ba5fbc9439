"""spatial — great-circle distance and radius membership for alert geography."""
