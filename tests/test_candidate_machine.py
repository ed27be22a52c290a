"""
Candidate disposition 상태 머신 테스트
"""
import itertools
from datetime import timedelta

import pytest

from control_plane.db import utcnow
from control_plane.errors import ErrorCode
from control_plane.services.candidate_machine import (
    Disposition,
    TERMINAL_DISPOSITIONS,
    VALID_TRANSITIONS,
    is_stuck,
    is_terminal,
    stuck_slas,
    valid_targets,
    validate_candidate_transition,
)

D = Disposition


class TestTransitions:
    """전이 규칙"""

    @pytest.mark.parametrize("src,dst", list(itertools.product(Disposition, Disposition)))
    def test_matches_adjacency(self, src, dst):
        r = validate_candidate_transition(src, dst)
        assert r.allowed is (src is dst or dst in VALID_TRANSITIONS[src])

    @pytest.mark.parametrize("terminal", [D.REJECTED, D.MERGED])
    def test_terminal_states_absorbing(self, terminal):
        for dst in Disposition:
            if dst is terminal:
                continue
            r = validate_candidate_transition(terminal, dst)
            assert r.allowed is False
            assert r.code is ErrorCode.TERMINAL_STATE_VIOLATION

    def test_recycled_reentry_points(self):
        allowed = {d for d in Disposition if d is not D.RECYCLED
                   and validate_candidate_transition(D.RECYCLED, d).allowed}
        assert allowed == {D.PENDING_REVIEW, D.QUEUED}

    def test_rejection_lists_valid_targets(self):
        r = validate_candidate_transition(D.EXPIRED, D.READY)
        assert r.allowed is False
        assert r.code is ErrorCode.VALIDATION_REJECTED
        assert "Valid targets: [RECYCLED]" in r.reason

    def test_same_state_noop(self):
        r = validate_candidate_transition(D.MERGED, D.MERGED)
        assert r.allowed is True


class TestTerminal:
    def test_terminal_set(self):
        assert TERMINAL_DISPOSITIONS == {D.REJECTED, D.MERGED}
        assert is_terminal(D.REJECTED)
        assert not is_terminal(D.EXPIRED)

    def test_valid_targets_ordered(self):
        assert valid_targets(D.RECYCLED) == [D.PENDING_REVIEW, D.QUEUED]
        assert valid_targets(D.MERGED) == []


class TestStuck:
    """SLA 기반 정체 판정"""

    def test_sla_boundaries(self, settings):
        slas = stuck_slas(settings)
        now = utcnow()
        assert is_stuck(D.QUEUED_FOR_QC, now - timedelta(hours=25), now, slas)
        assert not is_stuck(D.QUEUED_FOR_QC, now - timedelta(hours=23), now, slas)
        assert is_stuck(D.QUEUED, now - timedelta(days=8), now, slas)
        assert not is_stuck(D.QUEUED, now - timedelta(days=6), now, slas)
        assert is_stuck(D.PENDING_REVIEW, now - timedelta(days=31), now, slas)

    def test_untracked_dispositions_never_stuck(self, settings):
        now = utcnow()
        assert not is_stuck(D.SENT_TO_LAB, now - timedelta(days=365), now, stuck_slas(settings))
