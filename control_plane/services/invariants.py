"""
State invariant 점검 (읽기 전용 health check)

1. terminal 후보(REJECTED/MERGED)에 QUEUED 검증 작업이 남아 있지 않을 것
2. QUEUED_FOR_QC 에 48h 이상 머문 후보가 없을 것 (복구 SLA 24h 와 별개)
3. SENT_TO_LAB 후 1h 가 지나도 bot 이 생성되지 않은 후보가 없을 것

한 점검이 실패해도 나머지는 계속 실행한다.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from control_plane.db import utcnow
from control_plane.errors import StoreError
from control_plane.services.candidate_machine import Disposition, TERMINAL_DISPOSITIONS
from control_plane.services.store import LifecycleStore
from control_plane.services.telegram import Notifier, notify_safely
from control_plane.settings import Settings

log = logging.getLogger("invariants")


@dataclass(frozen=True)
class InvariantViolation:
    check: str
    count: int
    message: str
    entity_ids: list[str] = field(default_factory=list)


@dataclass
class InvariantReport:
    trace_id: str
    violations: list[InvariantViolation] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.violations


class InvariantChecker:
    def __init__(
        self,
        store: LifecycleStore,
        settings: Settings,
        notify: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
        sample_limit: int = 50,
    ):
        self.store = store
        self.qc_ceiling = timedelta(hours=settings.invariant_qc_ceiling_hours)
        self.orphan_lab_after = timedelta(hours=settings.invariant_orphan_lab_hours)
        self.sample_limit = sample_limit
        self._notify = notify
        self._clock = clock

    def _terminal_with_queued_verification(self, now: datetime) -> InvariantViolation | None:
        count, ids = self.store.terminal_with_queued_verification(TERMINAL_DISPOSITIONS, self.sample_limit)
        if not count:
            return None
        return InvariantViolation("terminal_with_queued_verification", count,
                                  f"{count} candidates in terminal state with QUEUED verification jobs", ids)

    def _stuck_in_qc(self, now: datetime) -> InvariantViolation | None:
        count, ids = self.store.candidates_older_than(Disposition.QUEUED_FOR_QC, now - self.qc_ceiling,
                                                      self.sample_limit)
        if not count:
            return None
        hours = self.qc_ceiling.total_seconds() / 3600
        return InvariantViolation("stuck_in_queued_for_qc", count,
                                  f"{count} candidates stuck in QUEUED_FOR_QC for >{hours:g} hours", ids)

    def _orphaned_lab(self, now: datetime) -> InvariantViolation | None:
        count, ids = self.store.candidates_older_than(Disposition.SENT_TO_LAB, now - self.orphan_lab_after,
                                                      self.sample_limit, without_created_bot=True)
        if not count:
            return None
        hours = self.orphan_lab_after.total_seconds() / 3600
        return InvariantViolation("orphaned_sent_to_lab", count,
                                  f"{count} SENT_TO_LAB candidates without created bot after {hours:g} hour(s)", ids)

    def run(self) -> InvariantReport:
        report = InvariantReport(trace_id=f"invariant-{uuid.uuid4().hex[:10]}")
        now = self._clock()
        log.info("[INVARIANT_CHECK] trace_id=%s Running state invariant checks", report.trace_id)

        checks = (
            ("terminal_with_queued_verification", self._terminal_with_queued_verification),
            ("stuck_in_queued_for_qc", self._stuck_in_qc),
            ("orphaned_sent_to_lab", self._orphaned_lab),
        )
        for name, check in checks:
            try:
                violation = check(now)
            except StoreError as exc:
                log.error("[INVARIANT_CHECK] trace_id=%s check=%s query failed: %s", report.trace_id, name, exc)
                violation = InvariantViolation(name, 0, f"Invariant check {name} query failed: {exc}")
            if violation is not None:
                report.violations.append(violation)

        if report.passed:
            log.info("[INVARIANT_CHECK] trace_id=%s All checks PASSED", report.trace_id)
        else:
            summary = "; ".join(v.message for v in report.violations)
            log.warning("[INVARIANT_CHECK] trace_id=%s VIOLATIONS: %s", report.trace_id, summary)
            notify_safely(self._notify, "CRITICAL", f"Invariant violations ({report.trace_id}): {summary}")
        return report
