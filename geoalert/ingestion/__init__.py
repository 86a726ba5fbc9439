"""
ingestion — Candidate alerts from external feeds into the store.

Modules:
    pipeline        — validate, de-duplicate by external id, upsert, dispatch
    weather_alerts  — OpenWeatherMap current-weather source for Indian cities
"""
