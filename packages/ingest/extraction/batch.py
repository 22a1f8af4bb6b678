from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Mapping, Optional, Union

from packages.core.config import ReconcilerSettings
from packages.core.errors import PermanentIngestFailure, TransientExtractionError, ValidationError
from packages.core.schemas.result import BatchReport, IngestFailure, IntakeResult
from packages.ingest.extraction.intake import intake_document
from packages.ingest.extraction.store import IntakeStore

logger = logging.getLogger(__name__)

ExtractionFetcher = Callable[[], Any]


def _fetch_with_retry(
    document_id: str,
    fetch: ExtractionFetcher,
    settings: ReconcilerSettings,
    sleep: Callable[[float], None],
    jitter: Callable[[], float],
) -> Any:
    policy = settings.retry
    for attempt in range(policy.max_attempts):
        try:
            return fetch()
        except TransientExtractionError as exc:
            attempts_used = attempt + 1
            if attempts_used >= policy.max_attempts:
                raise PermanentIngestFailure(
                    document_id, attempts_used, type(exc).__name__
                ) from exc
            delay = policy.delay_for(attempt) + jitter() * policy.jitter_seconds
            logger.debug(
                "Transient extraction failure document_id=%s attempt=%d retry_in=%.3fs",
                document_id,
                attempts_used,
                delay,
            )
            sleep(delay)
    raise PermanentIngestFailure(document_id, policy.max_attempts, "retries_exhausted")


def ingest_one(
    patient_id: str,
    document_id: str,
    fetch: ExtractionFetcher,
    settings: ReconcilerSettings,
    *,
    sleep: Callable[[float], None] = time.sleep,
    jitter: Callable[[], float] = random.random,
) -> Union[IntakeResult, IngestFailure]:
    """Fetch and intake one document. Failures come back as values, never raised."""
    try:
        raw = _fetch_with_retry(document_id, fetch, settings, sleep, jitter)
        return intake_document(patient_id, document_id, raw, settings)
    except PermanentIngestFailure as exc:
        logger.warning(
            "Ingest failed permanently patient_id=%s document_id=%s attempts=%d",
            patient_id,
            document_id,
            exc.attempts,
        )
        return IngestFailure(
            document_id=document_id,
            kind=exc.kind,
            attempts=exc.attempts,
            message=exc.cause,
        )
    except ValidationError as exc:
        logger.warning(
            "Rejected document patient_id=%s document_id=%s reason=%s",
            patient_id,
            document_id,
            exc.reason,
        )
        return IngestFailure(document_id=document_id, kind=exc.kind, message=exc.reason)
    except Exception as exc:
        logger.warning(
            "Unreadable document patient_id=%s document_id=%s error=%s",
            patient_id,
            document_id,
            type(exc).__name__,
        )
        return IngestFailure(
            document_id=document_id,
            kind="unreadable_document",
            message=type(exc).__name__,
        )


def ingest_batch(
    patient_id: str,
    fetchers: Mapping[str, ExtractionFetcher],
    settings: Optional[ReconcilerSettings] = None,
    *,
    store: Optional[IntakeStore] = None,
    sleep: Callable[[float], None] = time.sleep,
    jitter: Callable[[], float] = random.random,
) -> BatchReport:
    """Ingest documents in parallel on a bounded pool, one task per document."""
    settings = settings or ReconcilerSettings()
    report = BatchReport(patient_id=patient_id)
    if not fetchers:
        return report

    workers = min(settings.max_workers, len(fetchers))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(
                ingest_one,
                patient_id,
                document_id,
                fetch,
                settings,
                sleep=sleep,
                jitter=jitter,
            ): document_id
            for document_id, fetch in fetchers.items()
        }
        for future in as_completed(futures):
            outcome = future.result()
            if isinstance(outcome, IntakeResult):
                report.succeeded.append(outcome)
                if store is not None:
                    store.record_result(outcome)
            else:
                report.failed.append(outcome)
                if store is not None:
                    store.record_failure(patient_id, outcome)

    report.succeeded.sort(key=lambda result: result.document_id)
    report.failed.sort(key=lambda failure: failure.document_id)
    logger.info(
        "Batch ingest patient_id=%s succeeded=%d failed=%d",
        patient_id,
        len(report.succeeded),
        len(report.failed),
    )
    return report


__all__ = ["ExtractionFetcher", "ingest_one", "ingest_batch"]
