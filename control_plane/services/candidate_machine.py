"""
Strategy candidate disposition 상태 머신

    PENDING_REVIEW ─┬─> QUEUED ──> QUEUED_FOR_QC ─┬─> SENT_TO_LAB ──> MERGED
                    │                             └─> READY ──> SENT_TO_LAB
                    ├─> REJECTED
                    └─> EXPIRED ──> RECYCLED ──> PENDING_REVIEW / QUEUED

REJECTED, MERGED 는 terminal.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta

from control_plane.errors import ErrorCode


class Disposition(str, enum.Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    QUEUED = "QUEUED"
    QUEUED_FOR_QC = "QUEUED_FOR_QC"
    SENT_TO_LAB = "SENT_TO_LAB"
    READY = "READY"
    REJECTED = "REJECTED"
    MERGED = "MERGED"
    EXPIRED = "EXPIRED"
    RECYCLED = "RECYCLED"


D = Disposition

VALID_TRANSITIONS: dict[Disposition, frozenset[Disposition]] = {
    D.PENDING_REVIEW: frozenset({D.QUEUED, D.QUEUED_FOR_QC, D.SENT_TO_LAB, D.REJECTED, D.EXPIRED}),
    D.QUEUED: frozenset({D.QUEUED_FOR_QC, D.SENT_TO_LAB, D.REJECTED, D.EXPIRED, D.READY}),
    D.QUEUED_FOR_QC: frozenset({D.SENT_TO_LAB, D.READY, D.REJECTED, D.EXPIRED}),
    D.READY: frozenset({D.SENT_TO_LAB, D.QUEUED_FOR_QC, D.REJECTED, D.EXPIRED, D.MERGED}),
    D.SENT_TO_LAB: frozenset({D.MERGED, D.REJECTED, D.RECYCLED}),
    D.REJECTED: frozenset(),
    D.MERGED: frozenset(),
    D.EXPIRED: frozenset({D.RECYCLED}),
    D.RECYCLED: frozenset({D.PENDING_REVIEW, D.QUEUED}),
}

_missing = set(Disposition) - set(VALID_TRANSITIONS)
if _missing:
    raise RuntimeError(f"VALID_TRANSITIONS missing dispositions: {sorted(d.value for d in _missing)}")

# 반복 출력 순서 고정 (메시지용)
_ORDER = {d: i for i, d in enumerate(Disposition)}


@dataclass(frozen=True)
class CandidateTransitionResult:
    allowed: bool
    reason: str | None = None
    code: ErrorCode | None = None


def valid_targets(disposition: Disposition) -> list[Disposition]:
    return sorted(VALID_TRANSITIONS[Disposition(disposition)], key=_ORDER.__getitem__)


def is_terminal(disposition: Disposition) -> bool:
    return not VALID_TRANSITIONS[Disposition(disposition)]


TERMINAL_DISPOSITIONS = frozenset(d for d in Disposition if is_terminal(d))


def validate_candidate_transition(from_d: Disposition, to_d: Disposition) -> CandidateTransitionResult:
    from_d = Disposition(from_d)
    to_d = Disposition(to_d)

    if from_d is to_d:
        return CandidateTransitionResult(True, "Same state (no-op)")

    if is_terminal(from_d):
        return CandidateTransitionResult(
            False,
            f"{from_d.value} is a terminal state - candidate cannot transition to {to_d.value}",
            code=ErrorCode.TERMINAL_STATE_VIOLATION,
        )

    if to_d in VALID_TRANSITIONS[from_d]:
        return CandidateTransitionResult(True)

    targets = ", ".join(d.value for d in valid_targets(from_d))
    return CandidateTransitionResult(
        False,
        f"Invalid transition: {from_d.value} -> {to_d.value}. Valid targets: [{targets}]",
        code=ErrorCode.VALIDATION_REJECTED,
    )


def stuck_slas(settings) -> dict[Disposition, timedelta]:
    """disposition 별 정체 SLA (이 시간을 넘기면 reconciliation 대상)"""
    return {
        D.QUEUED_FOR_QC: timedelta(hours=settings.sla_queued_for_qc_hours),
        D.QUEUED: timedelta(hours=settings.sla_queued_hours),
        D.PENDING_REVIEW: timedelta(hours=settings.sla_pending_review_hours),
    }


def is_stuck(disposition: Disposition, updated_at: datetime, now: datetime, slas: dict[Disposition, timedelta]) -> bool:
    sla = slas.get(Disposition(disposition))
    if sla is None:
        return False
    return now - updated_at > sla
