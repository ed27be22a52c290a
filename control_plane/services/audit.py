"""
전이 감사(audit) 기록

- TransitionAuditLog: 최근 N건만 보관하는 in-process 캐시 (인스턴스 단위)
- DbAuditSink: transition_audit 테이블 (system of record)

sink 실패는 WARNING 로그만 남기고 본 전이를 막지 않는다.
"""
import enum
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from control_plane.db import utcnow
from control_plane.models import TransitionAudit

log = logging.getLogger("audit")


class Domain(str, enum.Enum):
    BOT = "BOT"
    CANDIDATE = "CANDIDATE"


class TriggerSource(str, enum.Enum):
    AUTO_PROMOTION = "AUTO_PROMOTION"
    AUTO_DEMOTION = "AUTO_DEMOTION"
    MANUAL = "MANUAL"
    BLOWN_ACCOUNT = "BLOWN_ACCOUNT"
    GOVERNANCE = "GOVERNANCE"
    RECONCILIATION = "RECONCILIATION"
    VERIFICATION = "VERIFICATION"
    SCHEDULER = "SCHEDULER"


@dataclass(frozen=True)
class TransitionAuditRecord:
    entity_id: str
    domain: Domain
    from_state: str
    to_state: str
    allowed: bool
    triggered_by: TriggerSource
    reason: str | None = None
    approver: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "domain": self.domain.value,
            "from": self.from_state,
            "to": self.to_state,
            "timestamp": self.timestamp.isoformat(),
            "allowed": self.allowed,
            "reason": self.reason,
            "triggered_by": self.triggered_by.value,
            "approver": self.approver,
        }


class AuditSink(Protocol):
    def append(self, record: TransitionAuditRecord) -> None: ...


class DbAuditSink:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def append(self, record: TransitionAuditRecord) -> None:
        with self._session_factory() as db:
            db.add(TransitionAudit(
                ts=record.timestamp,
                entity_id=record.entity_id,
                domain=record.domain.value,
                from_state=record.from_state,
                to_state=record.to_state,
                allowed=record.allowed,
                reason=record.reason,
                triggered_by=record.triggered_by.value,
                approver=record.approver,
            ))
            db.commit()


class TransitionAuditLog:
    """최신순 ring buffer. 여러 스레드에서 동시에 기록해도 안전."""

    def __init__(self, max_size: int = 1000, sink: AuditSink | None = None):
        self._records: deque[TransitionAuditRecord] = deque(maxlen=max_size)
        self._lock = threading.Lock()
        self._sink = sink

    def __len__(self) -> int:
        return len(self._records)

    def record(self, record: TransitionAuditRecord) -> None:
        with self._lock:
            self._records.appendleft(record)

        prefix = "TRANSITION" if record.allowed else "TRANSITION_BLOCKED"
        tag = "STAGE" if record.domain is Domain.BOT else "CANDIDATE"
        level = logging.INFO if record.allowed else logging.WARNING
        log.log(
            level,
            "[%s_%s] entity=%s %s->%s trigger=%s allowed=%s approver=%s reason=%s ts=%s",
            tag, prefix, record.entity_id, record.from_state, record.to_state,
            record.triggered_by.value, record.allowed, record.approver or "-",
            record.reason or "OK", record.timestamp.isoformat(),
        )

        if self._sink is None:
            return
        try:
            self._sink.append(record)
        except (SQLAlchemyError, OSError) as exc:
            log.warning("audit sink append failed entity=%s %s->%s: %s",
                        record.entity_id, record.from_state, record.to_state, exc)

    def recent(self, entity_id: str | None = None, domain: Domain | None = None,
               limit: int = 50) -> list[TransitionAuditRecord]:
        with self._lock:
            items = list(self._records)
        if entity_id is not None:
            items = [r for r in items if r.entity_id == entity_id]
        if domain is not None:
            items = [r for r in items if r.domain is domain]
        return items[:limit]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
