import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, Text, Boolean, ForeignKey, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column
from control_plane.db import Base, utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


class Bot(Base):
    __tablename__ = "bots"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # TRIALS → PAPER → SHADOW → CANARY → LIVE, KILLED (terminal)
    stage: Mapped[str] = mapped_column(String(16), default="TRIALS", index=True)
    stage_updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class BotRunner(Base):
    __tablename__ = "bot_runners"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    bot_id: Mapped[str] = mapped_column(String(64), ForeignKey("bots.id"), index=True)
    job_type: Mapped[str] = mapped_column(String(16), default="RUNNER")
    stage: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="idle")
    is_primary_runner: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class StrategyCandidate(Base):
    __tablename__ = "strategy_candidates"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    strategy_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    disposition: Mapped[str] = mapped_column(String(32), default="PENDING_REVIEW")
    # SENT_TO_LAB 이후 생성된 bot 참조
    created_bot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_candidates_disposition_updated", "disposition", "updated_at"),)


class CandidateVerification(Base):
    __tablename__ = "candidate_verifications"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    candidate_id: Mapped[str] = mapped_column(String(64), ForeignKey("strategy_candidates.id"), index=True)
    # QUEUED, RUNNING, COMPLETED, FAILED, CANCELLED
    status: Mapped[str] = mapped_column(String(16), default="QUEUED")
    # VERIFIED, DIVERGENT, INCONCLUSIVE, FAILED, QC_BYPASSED
    badge_state: Mapped[str | None] = mapped_column(String(16), nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class TransitionAudit(Base):
    __tablename__ = "transition_audit"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    entity_id: Mapped[str] = mapped_column(String(64), index=True)
    domain: Mapped[str] = mapped_column(String(16))  # BOT, CANDIDATE
    from_state: Mapped[str] = mapped_column(String(32))
    to_state: Mapped[str] = mapped_column(String(32))
    allowed: Mapped[bool] = mapped_column(Boolean)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(32))
    approver: Mapped[str | None] = mapped_column(String(128), nullable=True)
