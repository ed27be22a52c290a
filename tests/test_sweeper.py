"""
Sweep worker 스케줄링 테스트
"""
from control_plane.deps import build_control_plane
from control_plane.errors import StoreError
from control_plane.services.candidate_machine import Disposition
from control_plane.sweeper import Sweeper


def test_all_jobs_run_first_tick(settings, db_engine):
    sweeper = Sweeper(build_control_plane(settings, engine=db_engine))
    assert sweeper.run_due(1000.0) == ["stage_consistency", "candidate_reconciliation", "invariant_check"]


def test_intervals_respected(settings, db_engine):
    settings.invariant_interval_sec = 10
    settings.reconcile_interval_sec = 100
    settings.stage_check_interval_sec = 100
    sweeper = Sweeper(build_control_plane(settings, engine=db_engine))

    sweeper.run_due(0.0)
    assert sweeper.run_due(5.0) == []
    assert sweeper.run_due(10.0) == ["invariant_check"]
    assert sweeper.run_due(100.0) == ["stage_consistency", "candidate_reconciliation", "invariant_check"]


def test_reconcile_uses_configured_mode(settings, db_engine, make_candidate):
    settings.reconcile_dry_run = False
    cp = build_control_plane(settings, engine=db_engine)
    c = make_candidate(disposition="QUEUED_FOR_QC", hours_ago=30)

    Sweeper(cp).run_due(0.0)

    assert cp.store.get_candidate(c.id).disposition is Disposition.READY


def test_failing_job_isolated(settings, db_engine):
    cp = build_control_plane(settings, engine=db_engine)
    sweeper = Sweeper(cp)
    calls = []

    def boom():
        raise StoreError("stage", "down")

    sweeper.jobs[0].run = boom
    sweeper.jobs[2].run = lambda: calls.append("invariant")

    ran = sweeper.run_due(0.0)

    assert "stage_consistency" in ran
    assert calls == ["invariant"]
