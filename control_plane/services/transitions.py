"""
전이 적용 (orchestration)

    load → validate → audit(허용/차단 모두) → CAS write

CAS 가 실패하면 CONFLICT 를 돌려준다. 재시도 여부는 호출자가 결정.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from control_plane.db import utcnow
from control_plane.errors import ErrorCode, RETRYABLE, StoreError
from control_plane.services.audit import Domain, TransitionAuditLog, TransitionAuditRecord, TriggerSource
from control_plane.services.candidate_machine import Disposition, validate_candidate_transition
from control_plane.services.stage_machine import BotStage, validate_stage_transition
from control_plane.services.store import LifecycleStore
from control_plane.services.telegram import Notifier, notify_safely

log = logging.getLogger("transitions")


@dataclass(frozen=True)
class StageTransitionOptions:
    is_emergency: bool = False
    has_governance_approval: bool = False
    governance_approver: str | None = None


@dataclass(frozen=True)
class ApplyResult:
    success: bool
    error: str | None = None
    code: ErrorCode | None = None
    from_state: str | None = None
    to_state: str | None = None
    requires_approval: bool = False
    gate_requirements: tuple[str, ...] = ()
    cause: BaseException | None = None

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE


class TransitionService:
    def __init__(
        self,
        store: LifecycleStore,
        audit: TransitionAuditLog,
        notify: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self._notify = notify
        self._clock = clock

    def _store_failure(self, exc: StoreError, domain: Domain, entity_id: str, from_state: str | None,
                       to_state: str, triggered_by: TriggerSource) -> ApplyResult:
        log.error(
            "[TRANSITION_ERROR] domain=%s entity=%s %s->%s trigger=%s ts=%s code=%s error=%s",
            domain.value, entity_id, from_state or "?", to_state, triggered_by.value,
            self._clock().isoformat(), exc.code.value, exc,
        )
        return ApplyResult(False, str(exc), exc.code, from_state, to_state, cause=exc)

    def _not_found(self, domain: Domain, entity_id: str, to_state: str,
                   triggered_by: TriggerSource) -> ApplyResult:
        log.warning("[TRANSITION_ERROR] domain=%s entity=%s ?->%s trigger=%s ts=%s code=NOT_FOUND",
                    domain.value, entity_id, to_state, triggered_by.value, self._clock().isoformat())
        kind = "Bot" if domain is Domain.BOT else "Candidate"
        return ApplyResult(False, f"{kind} not found: {entity_id}", ErrorCode.NOT_FOUND, to_state=to_state)

    def _conflict(self, domain: Domain, entity_id: str, observed: str, to_state: str,
                  triggered_by: TriggerSource) -> ApplyResult:
        log.warning(
            "[TRANSITION_CONFLICT] domain=%s entity=%s %s->%s trigger=%s ts=%s state changed concurrently",
            domain.value, entity_id, observed, to_state, triggered_by.value, self._clock().isoformat(),
        )
        return ApplyResult(
            False,
            f"{entity_id} is no longer {observed}; reread and retry",
            ErrorCode.CONFLICT,
            observed,
            to_state,
        )

    # ── bot stage ──────────────────────────────────────────────────────────

    def transition_bot_stage(
        self,
        bot_id: str,
        to_stage: BotStage,
        triggered_by: TriggerSource,
        options: StageTransitionOptions | None = None,
    ) -> ApplyResult:
        options = options or StageTransitionOptions()
        to_stage = BotStage(to_stage)
        triggered_by = TriggerSource(triggered_by)

        try:
            bot = self.store.get_bot(bot_id)
        except StoreError as exc:
            return self._store_failure(exc, Domain.BOT, bot_id, None, to_stage.value, triggered_by)
        if bot is None:
            return self._not_found(Domain.BOT, bot_id, to_stage.value, triggered_by)

        current = bot.stage
        verdict = validate_stage_transition(
            current,
            to_stage,
            is_emergency=options.is_emergency,
            has_governance_approval=options.has_governance_approval,
        )
        self.audit.record(TransitionAuditRecord(
            entity_id=bot_id,
            domain=Domain.BOT,
            from_state=current.value,
            to_state=to_stage.value,
            allowed=verdict.allowed,
            triggered_by=triggered_by,
            reason=verdict.reason,
            approver=options.governance_approver,
            timestamp=self._clock(),
        ))

        if not verdict.allowed:
            return ApplyResult(
                False,
                verdict.reason,
                verdict.code,
                current.value,
                to_stage.value,
                requires_approval=verdict.requires_approval,
                gate_requirements=verdict.gate_requirements,
            )

        if current is to_stage:
            return ApplyResult(True, from_state=current.value, to_state=to_stage.value)

        try:
            won = self.store.cas_bot_stage(bot_id, current, to_stage, now=self._clock())
        except StoreError as exc:
            return self._store_failure(exc, Domain.BOT, bot_id, current.value, to_stage.value, triggered_by)
        if not won:
            return self._conflict(Domain.BOT, bot_id, current.value, to_stage.value, triggered_by)

        if to_stage is BotStage.KILLED:
            notify_safely(self._notify, "CRITICAL",
                          f"[{bot_id}] KILLED from {current.value} ({triggered_by.value})")

        return ApplyResult(
            True,
            from_state=current.value,
            to_state=to_stage.value,
            gate_requirements=verdict.gate_requirements,
        )

    # ── candidate disposition ──────────────────────────────────────────────

    def transition_candidate(
        self,
        candidate_id: str,
        to_disposition: Disposition,
        triggered_by: TriggerSource,
        reason: str | None = None,
        expected: Disposition | None = None,
    ) -> ApplyResult:
        """
        후보 disposition 전이

        Args:
            expected: 호출자가 이미 관측한 disposition. 주어지면 조회를 생략하고
                이 값을 CAS 조건으로 쓴다.
            reason: audit 에 남길 사유 (검증기 사유가 없을 때)
        """
        to_disposition = Disposition(to_disposition)
        triggered_by = TriggerSource(triggered_by)

        if expected is None:
            try:
                candidate = self.store.get_candidate(candidate_id)
            except StoreError as exc:
                return self._store_failure(exc, Domain.CANDIDATE, candidate_id, None,
                                           to_disposition.value, triggered_by)
            if candidate is None:
                return self._not_found(Domain.CANDIDATE, candidate_id, to_disposition.value, triggered_by)
            observed = candidate.disposition
        else:
            observed = Disposition(expected)

        verdict = validate_candidate_transition(observed, to_disposition)
        self.audit.record(TransitionAuditRecord(
            entity_id=candidate_id,
            domain=Domain.CANDIDATE,
            from_state=observed.value,
            to_state=to_disposition.value,
            allowed=verdict.allowed,
            triggered_by=triggered_by,
            reason=verdict.reason or reason,
            timestamp=self._clock(),
        ))

        if not verdict.allowed:
            return ApplyResult(False, verdict.reason, verdict.code, observed.value, to_disposition.value)

        if observed is to_disposition:
            return ApplyResult(True, from_state=observed.value, to_state=to_disposition.value)

        try:
            won = self.store.cas_candidate_disposition(candidate_id, observed, to_disposition,
                                                       now=self._clock())
            if not won and expected is not None and self.store.get_candidate(candidate_id) is None:
                return self._not_found(Domain.CANDIDATE, candidate_id, to_disposition.value, triggered_by)
        except StoreError as exc:
            return self._store_failure(exc, Domain.CANDIDATE, candidate_id, observed.value,
                                       to_disposition.value, triggered_by)
        if not won:
            return self._conflict(Domain.CANDIDATE, candidate_id, observed.value,
                                  to_disposition.value, triggered_by)

        return ApplyResult(True, from_state=observed.value, to_state=to_disposition.value)

    def safe_transition(self, candidate_id: str, from_disposition: Disposition, to_disposition: Disposition,
                        reason: str, triggered_by: TriggerSource = TriggerSource.MANUAL) -> ApplyResult:
        return self.transition_candidate(candidate_id, to_disposition, triggered_by,
                                         reason=reason, expected=from_disposition)
