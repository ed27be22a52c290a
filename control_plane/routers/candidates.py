from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from control_plane.deps import ControlPlane, get_control_plane, require_api_key
from control_plane.routers._errors import apply_response
from control_plane.services.audit import Domain, TriggerSource
from control_plane.services.candidate_machine import Disposition, is_terminal, valid_targets, validate_candidate_transition
from control_plane.services.reconciliation import StuckCandidate

router = APIRouter()


class DispositionTransitionReq(BaseModel):
    to_disposition: Disposition
    triggered_by: TriggerSource = TriggerSource.MANUAL
    reason: str | None = None
    expected: Disposition | None = None


def _stuck(s: StuckCandidate) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "disposition": s.disposition.value,
        "updated_at": s.updated_at.isoformat(),
        "stuck_duration_hours": s.stuck_duration_hours,
        "recommended_action": s.recommended_action.value,
    }


@router.get("/dispositions/validate")
def validate_disposition(from_disposition: Disposition, to_disposition: Disposition):
    r = validate_candidate_transition(from_disposition, to_disposition)
    return {
        "allowed": r.allowed,
        "reason": r.reason,
        "code": r.code.value if r.code else None,
        "terminal": is_terminal(from_disposition),
        "valid_targets": [d.value for d in valid_targets(from_disposition)],
    }


@router.post("/{candidate_id}/disposition", dependencies=[Depends(require_api_key)])
def transition_disposition(candidate_id: str, req: DispositionTransitionReq,
                           cp: ControlPlane = Depends(get_control_plane)):
    result = cp.transitions.transition_candidate(
        candidate_id, req.to_disposition, req.triggered_by, reason=req.reason, expected=req.expected,
    )
    return apply_response(result)


@router.post("/reconcile", dependencies=[Depends(require_api_key)])
def reconcile(dry_run: bool = True, cp: ControlPlane = Depends(get_control_plane)):
    report = cp.candidate_reconciler.run(dry_run=dry_run)
    return {
        "timestamp": report.timestamp.isoformat(),
        "trace_id": report.trace_id,
        "dry_run": report.dry_run,
        "stuck_candidates": [_stuck(s) for s in report.stuck_candidates],
        "auto_repaired_count": report.auto_repaired_count,
        "manual_review_required": [_stuck(s) for s in report.manual_review_required],
        "conflicts": report.conflicts,
        "errors": report.errors,
        "budget_exhausted": report.budget_exhausted,
        "resumed_after": report.resumed_after,
        "verified_unpromoted_count": report.verified_unpromoted_count,
    }


@router.get("/invariants")
def invariants(cp: ControlPlane = Depends(get_control_plane)):
    report = cp.invariants.run()
    return {
        "trace_id": report.trace_id,
        "passed": report.passed,
        "violations": [
            {"check": v.check, "count": v.count, "message": v.message, "entity_ids": v.entity_ids}
            for v in report.violations
        ],
    }


@router.get("/transitions")
def recent_transitions(
    candidate_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=1000),
    cp: ControlPlane = Depends(get_control_plane),
):
    items = cp.audit.recent(entity_id=candidate_id, domain=Domain.CANDIDATE, limit=limit)
    return {"items": [r.as_dict() for r in items]}
