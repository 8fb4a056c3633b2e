from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from traversal.core.models import (
    AttemptOutcome,
    LocatorCandidate,
    ValidationRecord,
    ValidationStatus,
    utc_now,
)
from traversal.logging.alerts import LOCATOR_FAILURE, AlertSink, emit_alert
from traversal.logging.audit import TraversalAuditLogger

log = logging.getLogger(__name__)

CandidateExecutor = Callable[[LocatorCandidate], AttemptOutcome]

HISTORY_WINDOW = 10
MAX_ATTEMPTS = 5


class ValidationLedger:
    """Append-only validation records grouped by candidate."""

    def __init__(self) -> None:
        self._records: dict[str, list[ValidationRecord]] = {}
        self._lock = threading.Lock()

    def append(self, record: ValidationRecord) -> None:
        with self._lock:
            self._records.setdefault(record.candidate_id, []).append(record)

    def records_for(self, candidate_id: str) -> list[ValidationRecord]:
        with self._lock:
            return list(self._records.get(candidate_id, []))

    def success_rate(self, candidate_id: str, window: int = HISTORY_WINDOW) -> float:
        recent = self.records_for(candidate_id)[-window:]
        if not recent:
            return 0.0
        passed = sum(1 for record in recent if record.status is ValidationStatus.PASSED)
        return passed / len(recent) * 100


@dataclass(slots=True)
class ValidationOutcome:
    candidate_id: str | None
    attempts: int
    records: list[ValidationRecord] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.candidate_id is not None


class LocatorValidator:
    """Tries candidates against the live device in rank order and tracks their reliability."""

    def __init__(
        self,
        ledger: ValidationLedger | None = None,
        audit_logger: TraversalAuditLogger | None = None,
        alert_sink: AlertSink | None = None,
        history_window: int = HISTORY_WINDOW,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.ledger = ledger or ValidationLedger()
        self.audit_logger = audit_logger
        self.alert_sink = alert_sink
        self.history_window = history_window
        self.max_attempts = max_attempts

    def validate_in_order(
        self,
        run_id: str,
        candidates: Iterable[LocatorCandidate],
        executor: CandidateExecutor,
    ) -> str | None:
        return self.validate(run_id, candidates, executor).candidate_id

    def validate(
        self,
        run_id: str,
        candidates: Iterable[LocatorCandidate],
        executor: CandidateExecutor,
    ) -> ValidationOutcome:
        ordered = sorted(candidates, key=lambda item: (not item.is_primary, -item.score))[: self.max_attempts]
        outcome = ValidationOutcome(candidate_id=None, attempts=0)
        for candidate in ordered:
            result = self._attempt(candidate, executor)
            outcome.attempts += 1
            record = self.record(run_id, candidate, result)
            outcome.records.append(record)
            if result.passed:
                outcome.candidate_id = candidate.candidate_id
                return outcome
            log.warning(
                "Locator %s=%s failed for element %s: %s",
                candidate.strategy.value,
                candidate.value,
                candidate.element_key,
                result.note,
            )

        if ordered:
            emit_alert(
                self.alert_sink,
                LOCATOR_FAILURE,
                "P2",
                "All locator candidates failed validation",
                {
                    "runId": run_id,
                    "elementKey": ordered[0].element_key,
                    "attemptedCount": outcome.attempts,
                },
            )
        return outcome

    def record(self, run_id: str, candidate: LocatorCandidate, result: AttemptOutcome) -> ValidationRecord:
        attempted_at = utc_now()
        record = ValidationRecord(
            candidate_id=candidate.candidate_id,
            run_id=run_id,
            status=ValidationStatus.PASSED if result.passed else ValidationStatus.FAILED,
            latency_ms=result.latency_ms,
            attempted_at=attempted_at,
            screenshot_path=result.screenshot_path,
            note=result.note,
        )
        self.ledger.append(record)
        if self.audit_logger is not None:
            self.audit_logger.write_validation(record)
        candidate.success_rate = self.ledger.success_rate(candidate.candidate_id, self.history_window)
        if result.passed:
            candidate.last_verified_at = attempted_at
        return record

    @staticmethod
    def _attempt(candidate: LocatorCandidate, executor: CandidateExecutor) -> AttemptOutcome:
        started = time.perf_counter()
        try:
            return executor(candidate)
        except Exception as exc:  # noqa: BLE001 - a crashing executor counts as a failed attempt.
            return AttemptOutcome(
                passed=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                note=f"{type(exc).__name__}: {exc}",
            )


class LocatorRegistry:
    """Keeps generated candidates per element so successful ones can be carried forward."""

    def __init__(self) -> None:
        self._candidates: dict[str, dict[str, LocatorCandidate]] = {}
        self._lock = threading.Lock()

    def register(self, candidates: Iterable[LocatorCandidate]) -> list[LocatorCandidate]:
        """Stores new candidates and returns the canonical instance for each one."""

        canonical: list[LocatorCandidate] = []
        with self._lock:
            for item in candidates:
                known = self._candidates.setdefault(item.element_key, {})
                existing = known.get(item.candidate_id)
                if existing is None:
                    known[item.candidate_id] = item
                    canonical.append(item)
                    continue
                existing.score = item.score
                existing.is_primary = item.is_primary
                existing.dynamic_flags = item.dynamic_flags
                canonical.append(existing)
        return canonical

    def historical(self, element_key: str, threshold: float) -> list[LocatorCandidate]:
        with self._lock:
            known = list(self._candidates.get(element_key, {}).values())
        reliable = [item for item in known if item.success_rate > threshold]
        reliable.sort(key=lambda item: item.success_rate, reverse=True)
        return reliable

    def candidates_for(self, element_key: str) -> list[LocatorCandidate]:
        with self._lock:
            return list(self._candidates.get(element_key, {}).values())
