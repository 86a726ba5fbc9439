"""
pipeline.py — De-duplicating ingestion of candidate alerts.

    payload ──validate──▶ Alert ──upsert_by_external_id──▶ UpsertResult
                                                            │
                              created / updated ────────────┼──▶ dispatch
                              unchanged ────────────────────┘    (skipped)

Each payload is isolated: a malformed document or a store failure for one
alert is counted in the batch report and never aborts its siblings.
Sources (``IngestionSource``) are polled by ``run()``; a source that
raises is logged and counted, never propagated.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError

from geoalert.alerts.dispatch import DispatchCoordinator, DispatchSummary
from geoalert.alerts.models import Alert
from geoalert.api.schemas import AlertIn
from geoalert.core.errors import GeoAlertError, ValidationError
from geoalert.storage.base import (
    AlertStore,
    RetryConfig,
    UpsertOutcome,
    UpsertResult,
    call_with_retry,
)

logger = logging.getLogger(__name__)


class IngestionSource(Protocol):
    """Anything that yields candidate alert documents."""
    name: str

    async def fetch(self) -> List[Dict[str, Any]]:
        ...


@dataclass
class IngestOutcome:
    result: UpsertResult
    dispatch: Optional[DispatchSummary] = None


@dataclass
class IngestReport:
    received: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    invalid: int = 0
    failed: int = 0
    notified: int = 0
    source_errors: int = 0
    duration_ms: float = 0.0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def count(self, outcome: UpsertOutcome) -> None:
        if outcome == UpsertOutcome.CREATED:
            self.created += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1

    def merge(self, other: "IngestReport") -> None:
        for name in (
            "received", "created", "updated", "unchanged", "invalid",
            "failed", "notified", "source_errors",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "invalid": self.invalid,
            "failed": self.failed,
            "notified": self.notified,
            "source_errors": self.source_errors,
            "duration_ms": round(self.duration_ms, 1),
            "errors": list(self.errors),
        }


def parse_alert_document(payload: Dict[str, Any], **overrides: Any) -> Alert:
    """Validate a flat alert document into an ``Alert``."""
    try:
        document = AlertIn.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
            for e in exc.errors()
        ]
        raise ValidationError("Invalid alert document", errors=errors) from None
    try:
        return document.to_alert(**overrides)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid alert document: {exc}") from None


class IngestionPipeline:

    def __init__(
        self,
        alerts: AlertStore,
        coordinator: DispatchCoordinator,
        sources: Optional[Sequence[IngestionSource]] = None,
        *,
        retry: Optional[RetryConfig] = None,
    ) -> None:
        self._alerts = alerts
        self._coordinator = coordinator
        self.sources: List[IngestionSource] = list(sources or [])
        self._retry = retry or RetryConfig()

    async def _upsert(self, alert: Alert) -> UpsertResult:
        result = await call_with_retry(
            self._alerts.upsert_by_external_id, alert, config=self._retry,
        )
        logger.info(
            "Alert %s (%s) %s",
            result.alert.id, alert.external_id or "no external id", result.outcome.value,
            extra={"alert_id": result.alert.id, "external_id": alert.external_id},
        )
        return result

    async def ingest_alert(
        self, payload: Dict[str, Any], *, dispatch: bool = True, **overrides: Any,
    ) -> IngestOutcome:
        """
        Validate, upsert and (on create/update) dispatch one alert document.

        ``overrides`` replace document fields (e.g. ``created_by`` for admin
        submissions).

        Raises
        ------
        ValidationError
            Malformed document or inverted validity window.
        TransientIOError
            Store still unavailable after bounded retries.
        """
        result = await self._upsert(parse_alert_document(payload, **overrides))
        outcome = IngestOutcome(result=result)
        if dispatch and result.changed:
            outcome.dispatch = await self._coordinator.dispatch(result.alert)
        return outcome

    async def ingest_batch(
        self, payloads: Sequence[Dict[str, Any]], *, dispatch: bool = True,
    ) -> IngestReport:
        started = time.perf_counter()
        report = IngestReport(received=len(payloads))

        for index, payload in enumerate(payloads):
            try:
                alert = parse_alert_document(payload)
            except ValidationError as exc:
                report.invalid += 1
                report.errors.append({"index": index, "stage": "validate", **exc.to_dict()})
                logger.warning("Ingest payload %d rejected: %s", index, exc.message)
                continue
            except Exception as exc:
                report.invalid += 1
                report.errors.append({"index": index, "stage": "validate", "message": str(exc)})
                logger.exception("Ingest payload %d could not be parsed", index)
                continue

            try:
                result = await self._upsert(alert)
            except GeoAlertError as exc:
                report.failed += 1
                report.errors.append({"index": index, "stage": "store", **exc.to_dict()})
                logger.error("Ingest payload %d not stored: %s", index, exc.message)
                continue
            except Exception as exc:
                report.failed += 1
                report.errors.append({"index": index, "stage": "store", "message": str(exc)})
                logger.exception("Ingest payload %d not stored", index)
                continue

            report.count(result.outcome)
            if not (dispatch and result.changed):
                continue
            try:
                summary = await self._coordinator.dispatch(result.alert)
                report.notified += summary.sent
            except Exception as exc:
                report.errors.append({
                    "index": index,
                    "stage": "dispatch",
                    "alert_id": result.alert.id,
                    "message": str(exc),
                })
                logger.error(
                    "Dispatch for ingested alert %s failed: %s", result.alert.id, exc,
                    extra={"alert_id": result.alert.id},
                )

        report.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Ingest batch: %d received, %d created, %d updated, %d unchanged, "
            "%d invalid, %d failed, %d notified",
            report.received, report.created, report.updated, report.unchanged,
            report.invalid, report.failed, report.notified,
        )
        return report

    async def run(self) -> IngestReport:
        """Poll every configured source and ingest what they yield."""
        started = time.perf_counter()
        total = IngestReport()
        for source in self.sources:
            try:
                payloads = await source.fetch()
            except Exception as exc:
                total.source_errors += 1
                total.errors.append({"stage": "fetch", "source": source.name, "message": str(exc)})
                logger.error("Source %s failed: %s", source.name, exc)
                continue
            total.merge(await self.ingest_batch(payloads))
        total.duration_ms = (time.perf_counter() - started) * 1000
        return total

    async def close(self) -> None:
        for source in self.sources:
            close = getattr(source, "close", None)
            if close is not None:
                await close()
