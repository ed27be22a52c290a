"""
pytest 설정 및 공통 fixtures
"""
from datetime import timedelta

import pytest

from control_plane.db import make_engine, make_session_factory, utcnow
from control_plane.migrate import run_all
from control_plane.models import Bot, BotRunner, CandidateVerification, StrategyCandidate
from control_plane.services.audit import TransitionAuditLog
from control_plane.services.store import LifecycleStore
from control_plane.services.transitions import TransitionService
from control_plane.settings import Settings


@pytest.fixture
def settings(tmp_path):
    """테스트용 SQLite 파일 DB 설정 (스레드 테스트 때문에 in-memory 대신 파일)"""
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        STORE_TIMEOUT_SEC=5,
        TELEGRAM_BOT_TOKEN="",
        TELEGRAM_CHAT_ID="",
        API_KEY=None,
    )


@pytest.fixture
def db_engine(settings):
    engine = make_engine(settings)
    run_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def db_session(session_factory):
    """테스트용 DB 세션"""
    with session_factory() as db:
        yield db


@pytest.fixture
def store(session_factory):
    return LifecycleStore(session_factory)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def notify(notifications):
    def _notify(level, text):
        notifications.append((level, text))
    return _notify


@pytest.fixture
def audit():
    return TransitionAuditLog(max_size=1000)


@pytest.fixture
def transitions(store, audit, notify):
    return TransitionService(store, audit, notify=notify)


@pytest.fixture
def make_bot(db_session):
    """Bot (+ 선택적 primary runner) 생성"""
    def _make(stage="TRIALS", name="test_bot", runner_stage=None, primary=True, active=True):
        bot = Bot(name=name, stage=stage)
        db_session.add(bot)
        db_session.commit()
        if runner_stage is not None:
            db_session.add(BotRunner(bot_id=bot.id, stage=runner_stage, status="running",
                                     is_primary_runner=primary, is_active=active))
            db_session.commit()
        return bot
    return _make


@pytest.fixture
def make_candidate(db_session):
    """StrategyCandidate 생성 (hours_ago 만큼 오래된 updated_at)"""
    def _make(disposition="PENDING_REVIEW", hours_ago=0.0, name="test_strategy", created_bot_id=None):
        ts = utcnow() - timedelta(hours=hours_ago)
        c = StrategyCandidate(strategy_name=name, disposition=disposition, created_bot_id=created_bot_id,
                              created_at=ts, updated_at=ts)
        db_session.add(c)
        db_session.commit()
        return c
    return _make


@pytest.fixture
def make_verification(db_session):
    def _make(candidate_id, status="QUEUED", badge_state=None):
        v = CandidateVerification(candidate_id=candidate_id, status=status, badge_state=badge_state)
        db_session.add(v)
        db_session.commit()
        return v
    return _make
