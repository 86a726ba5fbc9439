"""jobs — periodic ingestion and expiry sweep runs."""
