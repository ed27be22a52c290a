"""
Bot stage 상태 머신 테스트
"""
import itertools

import pytest

from control_plane.errors import ErrorCode
from control_plane.services.stage_machine import (
    BotStage,
    GATE_REQUIREMENTS,
    VALID_DEMOTIONS,
    VALID_PROMOTIONS,
    is_demotion,
    is_live_stage,
    is_promotion,
    is_terminal_stage,
    next_promotion_stage,
    promotion_gates,
    requires_governance_approval,
    stage_index,
    validate_stage_transition,
)

S = BotStage


class TestBasicRules:
    """기본 규칙"""

    @pytest.mark.parametrize("stage", list(BotStage))
    def test_same_stage_is_noop(self, stage):
        r = validate_stage_transition(stage, stage)
        assert r.allowed is True
        assert "no-op" in r.reason

    @pytest.mark.parametrize("target", [s for s in BotStage if s is not BotStage.KILLED])
    def test_killed_is_absorbing(self, target):
        for emergency, approval in itertools.product([False, True], repeat=2):
            r = validate_stage_transition(S.KILLED, target, is_emergency=emergency,
                                          has_governance_approval=approval)
            assert r.allowed is False
            assert r.code is ErrorCode.TERMINAL_STATE_VIOLATION
            assert "terminal" in r.reason

    @pytest.mark.parametrize("source", [s for s in BotStage if s is not BotStage.KILLED])
    def test_kill_always_allowed(self, source):
        r = validate_stage_transition(source, S.KILLED)
        assert r.allowed is True
        assert "kill" in r.reason.lower()

    def test_accepts_plain_strings(self):
        assert validate_stage_transition("TRIALS", "PAPER").allowed is True


class TestPromotion:
    """승격 테스트"""

    @pytest.mark.parametrize("src,dst", [
        (S.TRIALS, S.PAPER),
        (S.PAPER, S.SHADOW),
        (S.SHADOW, S.CANARY),
    ])
    def test_single_step_promotion_with_gates(self, src, dst):
        r = validate_stage_transition(src, dst)
        assert r.allowed is True
        assert r.gate_requirements == GATE_REQUIREMENTS[(src, dst)]
        assert len(r.gate_requirements) > 0

    def test_skip_names_required_intermediate(self):
        r = validate_stage_transition(S.TRIALS, S.SHADOW)
        assert r.allowed is False
        assert r.code is ErrorCode.VALIDATION_REJECTED
        assert "PAPER" in r.reason
        assert "TRIALS -> PAPER -> SHADOW" in r.reason

    def test_skip_to_live_lists_full_chain(self):
        r = validate_stage_transition(S.TRIALS, S.LIVE, has_governance_approval=True)
        assert r.allowed is False
        assert "TRIALS -> PAPER -> SHADOW -> CANARY -> LIVE" in r.reason

    def test_canary_to_live_requires_approval(self):
        r = validate_stage_transition(S.CANARY, S.LIVE, has_governance_approval=False)
        assert r.allowed is False
        assert r.requires_approval is True
        assert r.code is ErrorCode.GOVERNANCE_REQUIRED
        assert "Maker-checker governance approval" in r.gate_requirements

    def test_canary_to_live_with_approval(self):
        r = validate_stage_transition(S.CANARY, S.LIVE, has_governance_approval=True)
        assert r.allowed is True
        assert r.requires_approval is False
        assert r.gate_requirements == GATE_REQUIREMENTS[(S.CANARY, S.LIVE)]

    def test_emergency_does_not_unlock_promotion_skip(self):
        r = validate_stage_transition(S.TRIALS, S.CANARY, is_emergency=True)
        assert r.allowed is False


class TestDemotion:
    """강등 테스트"""

    def test_multi_step_demotion_allowed(self):
        r = validate_stage_transition(S.LIVE, S.PAPER)
        assert r.allowed is True
        assert r.gate_requirements == ()

    @pytest.mark.parametrize("src", [S.PAPER, S.SHADOW, S.CANARY, S.LIVE])
    def test_any_stage_can_demote_to_trials(self, src):
        assert validate_stage_transition(src, S.TRIALS).allowed is True

    def test_emergency_skip_down_to_trials(self):
        r = validate_stage_transition(S.LIVE, S.TRIALS, is_emergency=True)
        assert r.allowed is True
        assert "Emergency" in r.reason

    def test_emergency_to_other_stage_uses_normal_rules(self):
        # LIVE→SHADOW 는 일반 강등 규칙으로 허용, emergency 사유가 붙지 않음
        r = validate_stage_transition(S.LIVE, S.SHADOW, is_emergency=True)
        assert r.allowed is True
        assert r.reason is None


class TestExhaustive:
    """전체 (from, to) 조합 검사"""

    @staticmethod
    def _in_tables(src, dst):
        return (
            src is dst
            or (dst is S.KILLED and src is not S.KILLED)
            or dst in VALID_PROMOTIONS[src]
            or dst in VALID_DEMOTIONS[src]
        )

    @pytest.mark.parametrize("src,dst", list(itertools.product(BotStage, BotStage)))
    def test_pairs_outside_tables_rejected(self, src, dst):
        r = validate_stage_transition(src, dst, has_governance_approval=True)
        assert r.allowed is self._in_tables(src, dst)


class TestHelpers:
    def test_stage_index(self):
        assert stage_index(S.TRIALS) == 0
        assert stage_index(S.LIVE) == 4
        assert stage_index(S.KILLED) == -1

    def test_direction(self):
        assert is_promotion(S.PAPER, S.SHADOW)
        assert is_demotion(S.LIVE, S.TRIALS)
        assert not is_promotion(S.LIVE, S.CANARY)

    def test_next_promotion(self):
        assert next_promotion_stage(S.TRIALS) is S.PAPER
        assert next_promotion_stage(S.LIVE) is None
        assert next_promotion_stage(S.KILLED) is None

    def test_flags(self):
        assert is_terminal_stage(S.KILLED)
        assert not is_terminal_stage(S.LIVE)
        assert is_live_stage(S.LIVE)
        assert requires_governance_approval(S.CANARY, S.LIVE)
        assert not requires_governance_approval(S.SHADOW, S.CANARY)
        assert promotion_gates(S.LIVE, S.TRIALS) == ()
