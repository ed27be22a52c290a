from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from control_plane.deps import ControlPlane, get_control_plane, require_api_key
from control_plane.routers._errors import apply_response
from control_plane.services.audit import Domain, TriggerSource
from control_plane.services.stage_machine import BotStage, next_promotion_stage, validate_stage_transition
from control_plane.services.transitions import StageTransitionOptions

router = APIRouter()


class StageTransitionReq(BaseModel):
    to_stage: BotStage
    triggered_by: TriggerSource = TriggerSource.MANUAL
    is_emergency: bool = False
    has_governance_approval: bool = False
    governance_approver: str | None = None


@router.get("/stages/validate")
def validate_stage(
    from_stage: BotStage,
    to_stage: BotStage,
    is_emergency: bool = False,
    has_governance_approval: bool = False,
):
    r = validate_stage_transition(from_stage, to_stage, is_emergency, has_governance_approval)
    nxt = next_promotion_stage(from_stage)
    return {
        "allowed": r.allowed,
        "reason": r.reason,
        "requires_approval": r.requires_approval,
        "gate_requirements": list(r.gate_requirements),
        "code": r.code.value if r.code else None,
        "next_promotion": nxt.value if nxt else None,
    }


@router.post("/{bot_id}/stage", dependencies=[Depends(require_api_key)])
def transition_stage(bot_id: str, req: StageTransitionReq, cp: ControlPlane = Depends(get_control_plane)):
    result = cp.transitions.transition_bot_stage(
        bot_id,
        req.to_stage,
        req.triggered_by,
        StageTransitionOptions(
            is_emergency=req.is_emergency,
            has_governance_approval=req.has_governance_approval,
            governance_approver=req.governance_approver,
        ),
    )
    return apply_response(result)


@router.get("/transitions")
def recent_transitions(
    bot_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=1000),
    cp: ControlPlane = Depends(get_control_plane),
):
    items = cp.audit.recent(entity_id=bot_id, domain=Domain.BOT, limit=limit)
    return {"items": [r.as_dict() for r in items]}


@router.get("/consistency")
def stage_consistency(cp: ControlPlane = Depends(get_control_plane)):
    report = cp.stage_reconciler.run()
    return {
        "trace_id": report.trace_id,
        "checked": report.checked,
        "total": report.total,
        "complete": report.complete,
        "items": [asdict(f) for f in report.findings],
        "errors": report.errors,
    }
