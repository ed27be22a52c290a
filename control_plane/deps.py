from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from control_plane.db import make_engine, make_session_factory
from control_plane.services.audit import DbAuditSink, TransitionAuditLog
from control_plane.services.invariants import InvariantChecker
from control_plane.services.reconciliation import CandidateReconciler, StageReconciler
from control_plane.services.store import LifecycleStore
from control_plane.services.telegram import TelegramNotifier
from control_plane.services.transitions import TransitionService
from control_plane.settings import Settings


@dataclass
class ControlPlane:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    store: LifecycleStore
    audit: TransitionAuditLog
    transitions: TransitionService
    stage_reconciler: StageReconciler
    candidate_reconciler: CandidateReconciler
    invariants: InvariantChecker


def build_control_plane(settings: Settings, engine: Engine | None = None) -> ControlPlane:
    engine = engine if engine is not None else make_engine(settings)
    session_factory = make_session_factory(engine)
    notify = TelegramNotifier.from_settings(settings)
    store = LifecycleStore(session_factory)
    audit = TransitionAuditLog(settings.audit_buffer_size, sink=DbAuditSink(session_factory))
    transitions = TransitionService(store, audit, notify=notify)
    return ControlPlane(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        audit=audit,
        transitions=transitions,
        stage_reconciler=StageReconciler(store, settings.stage_check_row_budget),
        candidate_reconciler=CandidateReconciler(store, transitions, settings, notify=notify),
        invariants=InvariantChecker(store, settings, notify=notify),
    )


def get_control_plane(request: Request) -> ControlPlane:
    return request.app.state.control_plane


def get_settings(cp: ControlPlane = Depends(get_control_plane)) -> Settings:
    return cp.settings


def require_api_key(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    # API_KEY 미설정이면 auth 비활성화
    if not settings.api_key:
        return
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
