"""
Lifecycle 저장소

핵심 계약은 두 가지뿐:
- id 로 현재 상태 조회
- "state=X where state 가 아직 Y 일 때" 조건부 갱신 (CAS)

나머지는 reconciliation / invariant sweep 용 읽기 쿼리.
모든 호출은 짧은 세션 하나에서 끝나며, 드라이버 예외는 StoreError 로 감싼다.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from control_plane.db import utcnow
from control_plane.errors import StoreError, StoreTimeoutError
from control_plane.models import Bot, BotRunner, CandidateVerification, StrategyCandidate
from control_plane.services.candidate_machine import Disposition
from control_plane.services.stage_machine import BotStage

log = logging.getLogger("store")

_TIMEOUT_MARKERS = ("locked", "timeout", "timed out", "lost connection")


@dataclass(frozen=True)
class BotSnapshot:
    id: str
    name: str | None
    stage: BotStage
    stage_updated_at: datetime | None


@dataclass(frozen=True)
class CandidateSnapshot:
    id: str
    strategy_name: str | None
    disposition: Disposition
    updated_at: datetime
    created_bot_id: str | None = None


@dataclass(frozen=True)
class BotRunnerRow:
    bot_id: str
    bot_name: str | None
    bot_stage: str
    runner_stage: str | None
    runner_status: str | None


class LifecycleStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as db:
                yield db
        except PoolTimeoutError as exc:
            raise StoreTimeoutError(operation, str(exc)) from exc
        except OperationalError as exc:
            msg = str(exc.orig if exc.orig is not None else exc)
            if any(m in msg.lower() for m in _TIMEOUT_MARKERS):
                raise StoreTimeoutError(operation, msg) from exc
            raise StoreError(operation, msg) from exc
        except SQLAlchemyError as exc:
            raise StoreError(operation, str(exc)) from exc

    # ── bots ───────────────────────────────────────────────────────────────

    def get_bot(self, bot_id: str) -> BotSnapshot | None:
        with self._session("get_bot") as db:
            row = db.get(Bot, bot_id)
            if row is None:
                return None
            return BotSnapshot(
                id=row.id,
                name=row.name,
                stage=BotStage(row.stage or BotStage.TRIALS.value),
                stage_updated_at=row.stage_updated_at,
            )

    def cas_bot_stage(self, bot_id: str, expected: BotStage, new: BotStage,
                      now: datetime | None = None) -> bool:
        """expected 가 아직 유효할 때만 갱신. 실패하면 False (다른 writer 가 이김)."""
        stmt = (
            update(Bot)
            .where(Bot.id == bot_id, Bot.stage == BotStage(expected).value)
            .values(stage=BotStage(new).value, stage_updated_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        with self._session("cas_bot_stage") as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1

    def count_bots(self) -> int:
        stmt = select(func.count()).select_from(Bot).where(Bot.stage.is_not(None))
        with self._session("count_bots") as db:
            return db.scalar(stmt) or 0

    def bots_with_primary_runner(self, limit: int, after_id: str | None = None) -> list[BotRunnerRow]:
        """bot + 활성 primary runner, id 순 keyset 페이지 (after_id 다음부터 최대 limit 건)."""
        stmt = (
            select(Bot.id, Bot.name, Bot.stage, BotRunner.stage, BotRunner.status)
            .outerjoin(
                BotRunner,
                and_(
                    BotRunner.bot_id == Bot.id,
                    BotRunner.job_type == "RUNNER",
                    BotRunner.is_primary_runner.is_(True),
                    BotRunner.is_active.is_(True),
                ),
            )
            .where(Bot.stage.is_not(None))
        )
        if after_id is not None:
            stmt = stmt.where(Bot.id > after_id)
        stmt = stmt.order_by(Bot.id).limit(limit)
        with self._session("bots_with_primary_runner") as db:
            return [BotRunnerRow(*r) for r in db.execute(stmt).all()]

    # ── candidates ─────────────────────────────────────────────────────────

    @staticmethod
    def _candidate(row: StrategyCandidate) -> CandidateSnapshot:
        return CandidateSnapshot(
            id=row.id,
            strategy_name=row.strategy_name,
            disposition=Disposition(row.disposition),
            updated_at=row.updated_at,
            created_bot_id=row.created_bot_id,
        )

    def get_candidate(self, candidate_id: str) -> CandidateSnapshot | None:
        with self._session("get_candidate") as db:
            row = db.get(StrategyCandidate, candidate_id)
            return self._candidate(row) if row is not None else None

    def cas_candidate_disposition(self, candidate_id: str, expected: Disposition, new: Disposition,
                                  now: datetime | None = None) -> bool:
        stmt = (
            update(StrategyCandidate)
            .where(
                StrategyCandidate.id == candidate_id,
                StrategyCandidate.disposition == Disposition(expected).value,
            )
            .values(disposition=Disposition(new).value, updated_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        with self._session("cas_candidate_disposition") as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1

    def stuck_candidates(self, slas: dict[Disposition, timedelta], now: datetime, limit: int,
                         after: tuple[datetime, str] | None = None) -> list[CandidateSnapshot]:
        """SLA 를 넘긴 후보, (updated_at, id) 순으로 after 다음부터 최대 limit 건."""
        clauses = [
            and_(StrategyCandidate.disposition == d.value, StrategyCandidate.updated_at < now - sla)
            for d, sla in slas.items()
        ]
        stmt = select(StrategyCandidate).where(or_(*clauses))
        if after is not None:
            after_ts, after_id = after
            stmt = stmt.where(or_(
                StrategyCandidate.updated_at > after_ts,
                and_(StrategyCandidate.updated_at == after_ts, StrategyCandidate.id > after_id),
            ))
        stmt = stmt.order_by(StrategyCandidate.updated_at.asc(), StrategyCandidate.id).limit(limit)
        with self._session("stuck_candidates") as db:
            return [self._candidate(r) for r in db.execute(stmt).scalars().all()]

    def verified_unpromoted_count(self) -> int:
        """검증 통과(COMPLETED/VERIFIED) 했지만 disposition 이 진행되지 않고 bot 도 없는 후보 수"""
        stmt = (
            select(func.count(func.distinct(StrategyCandidate.id)))
            .join(CandidateVerification, CandidateVerification.candidate_id == StrategyCandidate.id)
            .where(
                CandidateVerification.status == "COMPLETED",
                CandidateVerification.badge_state == "VERIFIED",
                StrategyCandidate.disposition.not_in([
                    Disposition.SENT_TO_LAB.value, Disposition.REJECTED.value, Disposition.MERGED.value,
                ]),
                StrategyCandidate.created_bot_id.is_(None),
            )
        )
        with self._session("verified_unpromoted_count") as db:
            return int(db.execute(stmt).scalar_one())

    # ── invariant checks: (count, sample ids) ──────────────────────────────

    def _count_and_ids(self, operation: str, base, limit: int) -> tuple[int, list[str]]:
        sub = base.distinct().subquery()
        with self._session(operation) as db:
            count = int(db.execute(select(func.count()).select_from(sub)).scalar_one())
            ids = list(db.execute(select(sub.c.id).order_by(sub.c.id).limit(limit)).scalars().all())
        return count, ids

    def terminal_with_queued_verification(self, terminal: frozenset[Disposition],
                                          limit: int) -> tuple[int, list[str]]:
        base = (
            select(StrategyCandidate.id)
            .join(CandidateVerification, CandidateVerification.candidate_id == StrategyCandidate.id)
            .where(
                StrategyCandidate.disposition.in_([d.value for d in terminal]),
                CandidateVerification.status == "QUEUED",
            )
        )
        return self._count_and_ids("terminal_with_queued_verification", base, limit)

    def candidates_older_than(self, disposition: Disposition, cutoff: datetime, limit: int,
                              without_created_bot: bool = False) -> tuple[int, list[str]]:
        criteria = [
            StrategyCandidate.disposition == Disposition(disposition).value,
            StrategyCandidate.updated_at < cutoff,
        ]
        if without_created_bot:
            criteria.append(StrategyCandidate.created_bot_id.is_(None))
        base = select(StrategyCandidate.id).where(*criteria)
        return self._count_and_ids("candidates_older_than", base, limit)
