"""
Bot stage 상태 머신

    TRIALS ──> PAPER ──> SHADOW ──> CANARY ──> LIVE

- 승격은 한 단계씩만 (CANARY→LIVE 는 governance 승인 필요)
- 강등은 출발 stage 별 허용 목록 (여러 단계 건너뛰기 가능)
- KILLED 는 terminal: 어디서든 진입 가능, 빠져나올 수 없음
- emergency 플래그는 TRIALS / KILLED 목적지에만 적용
"""
import enum
from dataclasses import dataclass, field

from control_plane.errors import ErrorCode


class BotStage(str, enum.Enum):
    TRIALS = "TRIALS"
    PAPER = "PAPER"
    SHADOW = "SHADOW"
    CANARY = "CANARY"
    LIVE = "LIVE"
    KILLED = "KILLED"


STAGE_ORDER = (BotStage.TRIALS, BotStage.PAPER, BotStage.SHADOW, BotStage.CANARY, BotStage.LIVE)

VALID_PROMOTIONS: dict[BotStage, tuple[BotStage, ...]] = {
    BotStage.TRIALS: (BotStage.PAPER,),
    BotStage.PAPER: (BotStage.SHADOW,),
    BotStage.SHADOW: (BotStage.CANARY,),
    BotStage.CANARY: (BotStage.LIVE,),
    BotStage.LIVE: (),
    BotStage.KILLED: (),
}

VALID_DEMOTIONS: dict[BotStage, tuple[BotStage, ...]] = {
    BotStage.TRIALS: (),
    BotStage.PAPER: (BotStage.TRIALS,),
    BotStage.SHADOW: (BotStage.PAPER, BotStage.TRIALS),
    BotStage.CANARY: (BotStage.SHADOW, BotStage.PAPER, BotStage.TRIALS),
    BotStage.LIVE: (BotStage.CANARY, BotStage.SHADOW, BotStage.PAPER, BotStage.TRIALS),
    BotStage.KILLED: (),
}

EMERGENCY_DESTINATIONS = frozenset({BotStage.TRIALS, BotStage.KILLED})

GATE_REQUIREMENTS: dict[tuple[BotStage, BotStage], tuple[str, ...]] = {
    (BotStage.TRIALS, BotStage.PAPER): (
        "rolling_metrics_consistency: 3 consecutive backtest sessions meeting thresholds",
        "sharpe_ratio >= 1.0",
        "max_drawdown <= 15%",
        "profit_factor >= 1.3",
        "win_rate >= 40%",
    ),
    (BotStage.PAPER, BotStage.SHADOW): (
        "Minimum 24 hours paper trading",
        "Positive cumulative P&L",
        "No excessive drawdown events",
        "Signal consistency verified",
    ),
    (BotStage.SHADOW, BotStage.CANARY): (
        "Shadow validation period complete (48 hours)",
        "Shadow vs Paper P&L correlation > 0.8",
        "No execution discrepancies detected",
    ),
    (BotStage.CANARY, BotStage.LIVE): (
        "Maker-checker governance approval",
        "Risk limits verified",
        "Account funding confirmed",
        "Broker connection validated",
    ),
}


def _check_tables() -> None:
    # 새 stage 가 추가되면 모든 테이블을 같이 갱신해야 함
    for name, table in (("VALID_PROMOTIONS", VALID_PROMOTIONS), ("VALID_DEMOTIONS", VALID_DEMOTIONS)):
        missing = set(BotStage) - set(table)
        if missing:
            raise RuntimeError(f"{name} missing stages: {sorted(s.value for s in missing)}")
    for src, targets in VALID_PROMOTIONS.items():
        for dst in targets:
            if (src, dst) not in GATE_REQUIREMENTS:
                raise RuntimeError(f"GATE_REQUIREMENTS missing edge {src.value}->{dst.value}")


_check_tables()


@dataclass(frozen=True)
class StageTransitionResult:
    allowed: bool
    reason: str | None = None
    requires_approval: bool = False
    gate_requirements: tuple[str, ...] = field(default_factory=tuple)
    code: ErrorCode | None = None


def stage_index(stage: BotStage) -> int:
    """KILLED 는 순서 밖 (-1)"""
    try:
        return STAGE_ORDER.index(stage)
    except ValueError:
        return -1


def is_promotion(from_stage: BotStage, to_stage: BotStage) -> bool:
    return stage_index(to_stage) > stage_index(from_stage)


def is_demotion(from_stage: BotStage, to_stage: BotStage) -> bool:
    return stage_index(to_stage) < stage_index(from_stage)


def is_terminal_stage(stage: BotStage) -> bool:
    return stage is BotStage.KILLED


def is_live_stage(stage: BotStage) -> bool:
    return stage is BotStage.LIVE


def requires_governance_approval(from_stage: BotStage, to_stage: BotStage) -> bool:
    return from_stage is BotStage.CANARY and to_stage is BotStage.LIVE


def next_promotion_stage(current: BotStage) -> BotStage | None:
    promotions = VALID_PROMOTIONS[current]
    return promotions[0] if promotions else None


def promotion_gates(from_stage: BotStage, to_stage: BotStage) -> tuple[str, ...]:
    return GATE_REQUIREMENTS.get((from_stage, to_stage), ())


def _chain(from_stage: BotStage, to_stage: BotStage) -> str:
    lo, hi = stage_index(from_stage), stage_index(to_stage)
    return " -> ".join(s.value for s in STAGE_ORDER[lo:hi + 1])


def validate_stage_transition(
    from_stage: BotStage,
    to_stage: BotStage,
    is_emergency: bool = False,
    has_governance_approval: bool = False,
) -> StageTransitionResult:
    """
    Stage 전이 가능 여부 판정 (순수 함수, 부작용 없음)

    Returns:
        StageTransitionResult
        - requires_approval=True 이면 거부가 아니라 승인 워크플로로 보내야 함
        - 승격 edge 는 허용 여부와 무관하게 gate_requirements 를 포함
    """
    from_stage = BotStage(from_stage)
    to_stage = BotStage(to_stage)

    if from_stage is to_stage:
        return StageTransitionResult(True, "Same stage (no-op)")

    if from_stage is BotStage.KILLED:
        return StageTransitionResult(
            False,
            "KILLED is a terminal state - bot cannot be reactivated",
            code=ErrorCode.TERMINAL_STATE_VIOLATION,
        )

    if to_stage is BotStage.KILLED:
        return StageTransitionResult(True, "Emergency kill - bot permanently deactivated")

    if is_emergency and to_stage in EMERGENCY_DESTINATIONS:
        return StageTransitionResult(
            True, f"Emergency demotion to {to_stage.value} (blown account or critical failure)"
        )

    if is_promotion(from_stage, to_stage):
        valid = VALID_PROMOTIONS[from_stage]
        if to_stage not in valid:
            # 승격은 항상 1단계: 여기 오면 건너뛰기 시도
            return StageTransitionResult(
                False,
                f"Cannot skip stages: {from_stage.value} -> {to_stage.value}. "
                f"Must promote through: {_chain(from_stage, to_stage)}",
                code=ErrorCode.VALIDATION_REJECTED,
            )

        gates = promotion_gates(from_stage, to_stage)
        if requires_governance_approval(from_stage, to_stage) and not has_governance_approval:
            return StageTransitionResult(
                False,
                "CANARY->LIVE requires maker-checker governance approval",
                requires_approval=True,
                gate_requirements=gates,
                code=ErrorCode.GOVERNANCE_REQUIRED,
            )
        return StageTransitionResult(True, gate_requirements=gates)

    if is_demotion(from_stage, to_stage):
        valid = VALID_DEMOTIONS[from_stage]
        if to_stage not in valid:
            return StageTransitionResult(
                False,
                f"Invalid demotion: {from_stage.value} -> {to_stage.value}. "
                f"Valid demotions: [{', '.join(s.value for s in valid)}]",
                code=ErrorCode.VALIDATION_REJECTED,
            )
        return StageTransitionResult(True)

    return StageTransitionResult(
        False,
        f"Unknown transition: {from_stage.value} -> {to_stage.value}",
        code=ErrorCode.VALIDATION_REJECTED,
    )
