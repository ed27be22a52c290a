"""
Reconciliation sweeps

- StageReconciler: bot.stage 와 primary runner 의 stage 불일치 탐지 (읽기 전용)
- CandidateReconciler: SLA 를 넘긴 후보 탐지 + QUEUED_FOR_QC → READY 만 자동 복구

자동 복구도 일반 전이와 같은 CAS 경로를 탄다. 동시 전이와 경쟁하면 한쪽만 이긴다.
한 후보의 실패는 report.errors 에 모으고 나머지 스캔은 계속한다.
"""
import enum
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from control_plane.db import utcnow
from control_plane.errors import ErrorCode, StoreError
from control_plane.services.audit import TriggerSource
from control_plane.services.candidate_machine import Disposition, stuck_slas
from control_plane.services.stage_machine import BotStage
from control_plane.services.store import BotRunnerRow, LifecycleStore
from control_plane.services.telegram import Notifier, notify_safely
from control_plane.services.transitions import TransitionService
from control_plane.settings import Settings

log = logging.getLogger("reconciliation")


def _trace_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


# ===== Stage consistency =====

@dataclass(frozen=True)
class StageFinding:
    bot_id: str
    bot_name: str
    current_stage: str
    issues: list[str]
    recommendation: str


@dataclass
class StageConsistencyReport:
    trace_id: str
    checked: int = 0
    total: int | None = None
    pages: int = 0
    findings: list[StageFinding] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """전체 bot 을 다 봤는지. 조회가 중간에 실패하면 False."""
        return not self.errors and self.total is not None and self.checked >= self.total


RESTART_RUNNER = "Restart runner to sync stage"
INVESTIGATE_MISSING_RUNNER = "Investigate missing runner"

_RUNNER_OPTIONAL = {BotStage.TRIALS.value, BotStage.KILLED.value}


class StageReconciler:
    """모든 bot 을 id 순 keyset 페이지로 훑는다. row_budget 은 한 쿼리의 크기."""

    def __init__(self, store: LifecycleStore, row_budget: int = 500):
        self.store = store
        self.row_budget = max(1, row_budget)

    def run(self) -> StageConsistencyReport:
        report = StageConsistencyReport(trace_id=_trace_id("stage"))
        try:
            report.total = self.store.count_bots()
        except StoreError as exc:
            report.errors.append(f"Stage consistency count failed: {exc}")
            log.warning("[STAGE_CONSISTENCY] trace_id=%s count failed: %s", report.trace_id, exc)

        seen: set[str] = set()
        after_id = None
        while True:
            try:
                rows = self.store.bots_with_primary_runner(self.row_budget, after_id=after_id)
            except StoreError as exc:
                report.errors.append(f"Stage consistency query failed after bot {after_id}: {exc}")
                log.error("[STAGE_CONSISTENCY] trace_id=%s FAILED page=%d: %s", report.trace_id, report.pages, exc)
                break
            report.pages += 1
            for row in rows:
                seen.add(row.bot_id)
                self._inspect(report, row)
            if len(rows) < self.row_budget:
                break
            after_id = rows[-1].bot_id

        report.checked = len(seen)
        if report.complete:
            log.info("[STAGE_CONSISTENCY] trace_id=%s Checked %d bots, found %d with issues",
                     report.trace_id, report.checked, len(report.findings))
        else:
            log.warning("[STAGE_CONSISTENCY] trace_id=%s INCOMPLETE: checked %d of %s bots, found %d with issues",
                        report.trace_id, report.checked, report.total, len(report.findings))
        return report

    @staticmethod
    def _inspect(report: StageConsistencyReport, row: BotRunnerRow) -> None:
        issues = []
        if row.runner_stage and row.bot_stage != row.runner_stage:
            issues.append(f"Stage mismatch: bot.stage={row.bot_stage} vs runner.stage={row.runner_stage}")
        if row.bot_stage not in _RUNNER_OPTIONAL and not row.runner_stage:
            issues.append(f"Non-TRIALS bot without active runner: stage={row.bot_stage}")
        if not issues:
            return
        report.findings.append(StageFinding(
            bot_id=row.bot_id,
            bot_name=row.bot_name or "Unknown",
            current_stage=row.bot_stage,
            issues=issues,
            recommendation=RESTART_RUNNER if row.runner_stage else INVESTIGATE_MISSING_RUNNER,
        ))


# ===== Candidate reconciliation =====

class RecommendedAction(str, enum.Enum):
    MOVE_TO_READY = "MOVE_TO_READY"      # 자동 적용 가능
    MOVE_TO_EXPIRED = "MOVE_TO_EXPIRED"  # 수동 검토용, 자동 적용 안 함
    MANUAL_REVIEW = "MANUAL_REVIEW"


@dataclass(frozen=True)
class StuckCandidate:
    id: str
    name: str
    disposition: Disposition
    updated_at: datetime
    stuck_duration_hours: int
    recommended_action: RecommendedAction


@dataclass
class ReconciliationReport:
    timestamp: datetime
    trace_id: str
    dry_run: bool
    stuck_candidates: list[StuckCandidate] = field(default_factory=list)
    auto_repaired_count: int = 0
    manual_review_required: list[StuckCandidate] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    budget_exhausted: bool = False
    resumed_after: str | None = None  # 이전 실행이 멈춘 후보 id
    verified_unpromoted_count: int = 0


class CandidateReconciler:
    """
    SLA 를 넘긴 후보를 (updated_at, id) 순으로 row_budget 만큼씩 훑는다.

    예산을 다 쓴 실행은 마지막 행 위치를 cursor 로 남기고, 다음 실행은 그 뒤부터 이어서 본다.
    끝까지 본 실행(예산 미만)은 cursor 를 지워 다음 실행이 가장 오래된 행부터 다시 시작한다.
    자동 복구되지 않는 행(MOVE_TO_EXPIRED, MANUAL_REVIEW)이 예산을 채워도 뒤의 행까지 도달한다.
    cursor 는 dry_run 여부별로 따로 둔다.
    """

    def __init__(
        self,
        store: LifecycleStore,
        transitions: TransitionService,
        settings: Settings,
        notify: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.transitions = transitions
        self.slas = stuck_slas(settings)
        self.row_budget = max(1, settings.reconcile_row_budget)
        self._notify = notify
        self._clock = clock
        self._cursors: dict[bool, tuple[datetime, str] | None] = {True: None, False: None}
        self._cursor_lock = threading.Lock()

    def recommend(self, disposition: Disposition, stuck_for) -> RecommendedAction:
        if disposition is Disposition.QUEUED_FOR_QC and stuck_for > self.slas[Disposition.QUEUED_FOR_QC]:
            return RecommendedAction.MOVE_TO_READY
        if disposition is Disposition.QUEUED and stuck_for > self.slas[Disposition.QUEUED]:
            return RecommendedAction.MOVE_TO_EXPIRED
        return RecommendedAction.MANUAL_REVIEW

    def run(self, dry_run: bool = True) -> ReconciliationReport:
        now = self._clock()
        report = ReconciliationReport(timestamp=now, trace_id=_trace_id("recon"), dry_run=dry_run)
        log.info("[RECONCILIATION] trace_id=%s Starting candidate reconciliation (dry_run=%s)",
                 report.trace_id, dry_run)

        with self._cursor_lock:
            after = self._cursors[dry_run]
        if after is not None:
            report.resumed_after = after[1]

        try:
            candidates = self.store.stuck_candidates(self.slas, now, self.row_budget, after=after)
        except StoreError as exc:
            report.errors.append(f"Reconciliation query failed: {exc}")
            log.error("[RECONCILIATION] trace_id=%s FAILED: %s", report.trace_id, exc)
            self._alert(report)
            return report

        # 예산을 다 쓰면 나머지는 다음 실행이 cursor 뒤부터 이어서 처리
        report.budget_exhausted = len(candidates) >= self.row_budget
        with self._cursor_lock:
            self._cursors[dry_run] = (
                (candidates[-1].updated_at, candidates[-1].id) if report.budget_exhausted else None
            )

        for c in candidates:
            stuck_for = now - c.updated_at
            stuck = StuckCandidate(
                id=c.id,
                name=c.strategy_name or "Unknown",
                disposition=c.disposition,
                updated_at=c.updated_at,
                stuck_duration_hours=round(stuck_for.total_seconds() / 3600),
                recommended_action=self.recommend(c.disposition, stuck_for),
            )
            report.stuck_candidates.append(stuck)

            if stuck.recommended_action is not RecommendedAction.MOVE_TO_READY:
                report.manual_review_required.append(stuck)
                continue
            if dry_run:
                continue
            self._repair(report, stuck)

        self._count_verified_unpromoted(report)

        log.info(
            "[RECONCILIATION] trace_id=%s Complete: stuck=%d autoRepaired=%d manualReview=%d "
            "conflicts=%d errors=%d budget_exhausted=%s resumed_after=%s",
            report.trace_id, len(report.stuck_candidates), report.auto_repaired_count,
            len(report.manual_review_required), len(report.conflicts), len(report.errors),
            report.budget_exhausted, report.resumed_after,
        )
        self._alert(report)
        return report

    def _repair(self, report: ReconciliationReport, stuck: StuckCandidate) -> None:
        result = self.transitions.transition_candidate(
            stuck.id,
            Disposition.READY,
            TriggerSource.RECONCILIATION,
            reason=f"Stuck in QUEUED_FOR_QC for {stuck.stuck_duration_hours}h",
            expected=Disposition.QUEUED_FOR_QC,
        )
        if result.success:
            report.auto_repaired_count += 1
            log.info("[RECONCILIATION] trace_id=%s AUTO_REPAIRED candidate=%s from=QUEUED_FOR_QC to=READY after=%dh",
                     report.trace_id, stuck.id, stuck.stuck_duration_hours)
        elif result.code in (ErrorCode.CONFLICT, ErrorCode.NOT_FOUND):
            # 다른 writer 가 먼저 옮김: 정상
            report.conflicts.append(stuck.id)
        else:
            report.errors.append(f"Failed to repair {stuck.id}: {result.error}")

    def _count_verified_unpromoted(self, report: ReconciliationReport) -> None:
        try:
            report.verified_unpromoted_count = self.store.verified_unpromoted_count()
        except StoreError as exc:
            report.errors.append(f"Verified-unpromoted check failed: {exc}")
            log.warning("[RECONCILIATION] trace_id=%s QC_PASSED_CHECK skipped: %s", report.trace_id, exc)
            return
        if report.verified_unpromoted_count:
            log.info("[RECONCILIATION] trace_id=%s Found %d verified candidates stuck (requires manual promotion)",
                     report.trace_id, report.verified_unpromoted_count)

    def _alert(self, report: ReconciliationReport) -> None:
        if report.errors:
            notify_safely(self._notify, "WARN",
                          f"Reconciliation {report.trace_id}: {len(report.errors)} error(s): {report.errors[0]}")
