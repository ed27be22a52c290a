"""
Sweep worker

주기별로 stage consistency / candidate reconciliation / invariant check 실행.
한 sweep 이 실패해도 다른 sweep 은 계속 돈다.

    python -m control_plane.sweeper
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable

from control_plane.deps import ControlPlane, build_control_plane
from control_plane.errors import StoreError
from control_plane.logging_ import configure_logging
from control_plane.migrate import run_all
from control_plane.settings import Settings

log = logging.getLogger("sweeper")


@dataclass
class SweepJob:
    name: str
    interval_sec: float
    run: Callable[[], object]
    last_run: float | None = None

    def due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval_sec


class Sweeper:
    def __init__(self, cp: ControlPlane):
        s = cp.settings
        self.jobs = [
            SweepJob("stage_consistency", s.stage_check_interval_sec, cp.stage_reconciler.run),
            SweepJob("candidate_reconciliation", s.reconcile_interval_sec,
                     lambda: cp.candidate_reconciler.run(dry_run=s.reconcile_dry_run)),
            SweepJob("invariant_check", s.invariant_interval_sec, cp.invariants.run),
        ]

    def run_due(self, now: float) -> list[str]:
        """due 인 job 실행, 실행한 job 이름 반환"""
        ran = []
        for job in self.jobs:
            if not job.due(now):
                continue
            job.last_run = now
            try:
                job.run()
            except StoreError as exc:
                log.error("[SWEEPER] job=%s store error: %s", job.name, exc)
            ran.append(job.name)
        return ran


def main():
    settings = Settings()
    configure_logging(settings.log_level)
    cp = build_control_plane(settings)
    run_all(cp.engine)
    sweeper = Sweeper(cp)
    log.info("[SWEEPER] starting jobs=%s dry_run=%s",
             [j.name for j in sweeper.jobs], settings.reconcile_dry_run)
    while True:
        sweeper.run_due(time.monotonic())
        time.sleep(settings.sweeper_tick_sec)


if __name__ == "__main__":
    main()
