"""
Risk Gate Evaluator.

Each configured check item is resolved to an ordinal risk level through the
RiskAssessor collaborator. The gate's aggregate level is the maximum over all
checks; above ``maxRiskLevel`` the gate blocks. Blocking is not failure:
the gate node still SUCCEEDS and the scheduler halts what lies behind it on
control edges only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from marketflow.graph.expressions import MISSING, KeySegment, walk_path

if TYPE_CHECKING:
    from marketflow.collaborators import RiskAssessor
    from marketflow.runtime.context import RunContext

logger = logging.getLogger(__name__)


class RiskLevel(StrEnum):
    """Ordinal risk level: LOW < MEDIUM < HIGH < EXTREME."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank


_RANKS = {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3, RiskLevel.EXTREME: 4}
_ALIASES = {"L": RiskLevel.LOW, "M": RiskLevel.MEDIUM, "H": RiskLevel.HIGH, "E": RiskLevel.EXTREME}


class DegradeAction(StrEnum):
    HOLD = "HOLD"
    REDUCE = "REDUCE"
    REVIEW_ONLY = "REVIEW_ONLY"


def parse_risk_level(value: Any) -> RiskLevel | None:
    """Accept a RiskLevel, a name (any case), an alias (L/M/H/E) or a rank 1-4."""
    if isinstance(value, RiskLevel):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        for level, rank in _RANKS.items():
            if rank == int(value):
                return level
        return None
    if isinstance(value, str):
        text = value.strip().upper()
        if text in RiskLevel.__members__:
            return RiskLevel[text]
        if text in _ALIASES:
            return _ALIASES[text]
        if text.isdigit():
            return parse_risk_level(int(text))
    return None


@dataclass
class RiskCheckResult:
    name: str
    level: RiskLevel
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {"name": self.name, "level": str(self.level)}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class GateDecision:
    """Outcome of evaluating a risk gate."""

    risk_level: RiskLevel
    max_risk_level: RiskLevel
    checks: list[RiskCheckResult] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    degrade_action: DegradeAction = DegradeAction.HOLD
    hard_block: bool = False

    @property
    def blocked_by_level(self) -> bool:
        return self.risk_level > self.max_risk_level

    @property
    def blocked(self) -> bool:
        return self.blocked_by_level or bool(self.blockers)

    @property
    def passed(self) -> bool:
        return not self.blocked

    @property
    def block_reason(self) -> str | None:
        if not self.blocked:
            return None
        reasons = []
        if self.blocked_by_level:
            reasons.append(f"riskLevel={self.risk_level} exceeds maxRiskLevel={self.max_risk_level}")
        if self.blockers:
            reasons.append(f"blocker rules hit: {', '.join(self.blockers)}")
        return "; ".join(reasons)

    def to_output(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "blocked": self.blocked,
            "riskLevel": str(self.risk_level),
            "maxRiskLevel": str(self.max_risk_level),
            "checks": [c.to_dict() for c in self.checks],
            "blockers": list(self.blockers),
            "blockReason": self.block_reason,
            "degradeAction": str(self.degrade_action) if self.blocked else None,
            "hardBlock": self.hard_block,
        }


class RiskGateEvaluator:
    """
    Evaluates risk-gate configuration.

    Config keys:
        maxRiskLevel: highest acceptable aggregate level (default MEDIUM)
        checkItems: check names resolved through the RiskAssessor
        blockerRules: field paths into the gate input that block when truthy
        degradeAction: HOLD | REDUCE | REVIEW_ONLY, reported on block
        hardBlock: a block fails the gate node instead of halting quietly

    A check whose assessment raises, or returns an unrecognised level, is
    counted as EXTREME so the gate fails closed.
    """

    DEFAULT_MAX_LEVEL = RiskLevel.MEDIUM

    def __init__(self, assessor: RiskAssessor | None):
        self.assessor = assessor

    @staticmethod
    def config_problems(config: dict[str, Any]) -> list[str]:
        problems = []
        if "maxRiskLevel" in config and parse_risk_level(config["maxRiskLevel"]) is None:
            problems.append(f"config.maxRiskLevel '{config['maxRiskLevel']}' is not a risk level")
        items = config.get("checkItems", [])
        if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
            problems.append("config.checkItems must be a list of check names")
        action = config.get("degradeAction")
        if action is not None and str(action).upper() not in DegradeAction.__members__:
            problems.append(f"config.degradeAction '{action}' is not one of HOLD, REDUCE, REVIEW_ONLY")
        return problems

    async def evaluate(
        self,
        config: dict[str, Any],
        gate_input: dict[str, Any],
        run_context: RunContext,
    ) -> GateDecision:
        max_level = parse_risk_level(config.get("maxRiskLevel")) or self.DEFAULT_MAX_LEVEL
        check_items = [str(item) for item in config.get("checkItems", [])]

        checks = list(await asyncio.gather(*(self._assess(item, run_context) for item in check_items)))

        reported = parse_risk_level(gate_input.get("riskLevel"))
        if reported is not None:
            checks.append(RiskCheckResult(name="input.riskLevel", level=reported))

        aggregate = max((c.level for c in checks), default=RiskLevel.LOW)
        blockers = [
            rule for rule in config.get("blockerRules", []) if _truthy(_read_path(gate_input, rule))
        ]
        degrade = str(config.get("degradeAction", DegradeAction.HOLD)).upper()

        decision = GateDecision(
            risk_level=aggregate,
            max_risk_level=max_level,
            checks=checks,
            blockers=blockers,
            degrade_action=DegradeAction(degrade),
            hard_block=bool(config.get("hardBlock", False)),
        )
        if decision.blocked:
            logger.info(f"🛑 Risk gate blocked: {decision.block_reason}")
        return decision

    async def _assess(self, item: str, run_context: RunContext) -> RiskCheckResult:
        if self.assessor is None:
            return RiskCheckResult(item, RiskLevel.EXTREME, error="no risk assessor configured")
        try:
            raw = await self.assessor.assess(item, run_context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Risk check '{item}' failed, treating as EXTREME: {e}")
            return RiskCheckResult(item, RiskLevel.EXTREME, error=str(e))
        level = parse_risk_level(raw)
        if level is None:
            return RiskCheckResult(item, RiskLevel.EXTREME, error=f"unrecognised level {raw!r}")
        return RiskCheckResult(item, level)


def _read_path(data: Any, path: str) -> Any:
    """Read a dotted path such as ``risk.flags.limitBreached`` from the gate input."""
    value = walk_path(data, [KeySegment(part) for part in path.strip().split(".") if part])
    return None if value is MISSING else value


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no", "none", "null")
    return bool(value)
