"""
Debate Coordinator - bounded multi-round, multi-participant debates.

A debate is an explicit state machine, not a graph cycle::

    ROUND_START -> COLLECTING -> CONVERGENCE_CHECK -+-> ROUND_START   (score < threshold, rounds left)
                                                    +-> JUDGING       (converged, or maxRounds reached)
    JUDGING -> DONE

Participants within a round are invoked concurrently and independently; a
participant that fails is recorded with a placeholder statement and does not
abort the round. A debate that never converges is forced into JUDGING after
``maxRounds``, so every debate ends in a verdict.

The agreement score is pluggable (see ``SCORERS``). The default,
``reported-agreement``, averages the ``agreement`` each participant reports
and falls back to key-point overlap when nobody reports one.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from marketflow.collaborators import AgentInvoker
from marketflow.executors.output import parse_structured_response
from marketflow.runtime.event_bus import EventBus, EventType, RunEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 3
DEFAULT_CONVERGENCE_THRESHOLD = 0.8
MAX_CONTEXT_CHARS = 4000


class DebateState(StrEnum):
    ROUND_START = "ROUND_START"
    COLLECTING = "COLLECTING"
    CONVERGENCE_CHECK = "CONVERGENCE_CHECK"
    JUDGING = "JUDGING"
    DONE = "DONE"


class JudgePolicy(StrEnum):
    """How the final verdict is produced."""

    JUDGE_AGENT = "JUDGE_AGENT"
    WEIGHTED = "WEIGHTED"
    MAJORITY = "MAJORITY"


@dataclass(frozen=True)
class DebateParticipant:
    code: str
    role: str = "DEBATER"
    agent_profile_code: str = ""
    stance: str = ""
    weight: float = 1.0

    @classmethod
    def from_config(cls, data: dict[str, Any]) -> "DebateParticipant":
        return cls(
            code=str(data.get("code") or data.get("agentProfileCode") or ""),
            role=str(data.get("role") or "DEBATER"),
            agent_profile_code=str(data.get("agentProfileCode") or data.get("code") or ""),
            stance=str(data.get("stance") or data.get("perspective") or ""),
            weight=float(data.get("weight", 1.0)),
        )

    @property
    def label(self) -> str:
        return f"{self.role}:{self.code}" if self.role else self.code


@dataclass
class ParticipantStatement:
    participant: DebateParticipant
    argument: str
    confidence: float | None = None
    key_points: list[str] = field(default_factory=list)
    agreement: float | None = None
    rebuttal: str | None = None
    position: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant": self.participant.code,
            "role": self.participant.role,
            "stance": self.participant.stance,
            "argument": self.argument,
            "confidence": self.confidence,
            "keyPoints": list(self.key_points),
            "agreement": self.agreement,
            "rebuttal": self.rebuttal,
            "position": self.position,
            "error": self.error,
        }


@dataclass
class DebateRound:
    round_number: int
    statements: list[ParticipantStatement] = field(default_factory=list)
    score: float | None = None

    def successful(self) -> list[ParticipantStatement]:
        return [s for s in self.statements if s.ok]

    def to_dict(self) -> dict[str, Any]:
        return {
            "round": self.round_number,
            "score": self.score,
            "statements": [s.to_dict() for s in self.statements],
        }


@dataclass
class DebateSession:
    """State of one debate, scoped to a single debate-round node execution."""

    topic: str
    participants: list[DebateParticipant]
    max_rounds: int = DEFAULT_MAX_ROUNDS
    convergence_threshold: float = DEFAULT_CONVERGENCE_THRESHOLD
    judge_policy: JudgePolicy = JudgePolicy.WEIGHTED
    judge_agent_profile_code: str | None = None
    round_number: int = 0
    rounds: list[DebateRound] = field(default_factory=list)
    state: DebateState = DebateState.ROUND_START
    history: list[DebateState] = field(default_factory=list)
    converged: bool = False
    verdict: dict[str, Any] | None = None

    def transition(self, state: DebateState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"Debate '{self.topic[:40]}' round {self.round_number}: -> {state}")

    @property
    def scores(self) -> list[float]:
        return [r.score for r in self.rounds if r.score is not None]

    @property
    def final_score(self) -> float | None:
        return self.scores[-1] if self.scores else None

    def transcript(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.rounds]

    def to_output(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "converged": self.converged,
            "roundCount": len(self.rounds),
            "maxRounds": self.max_rounds,
            "convergenceThreshold": self.convergence_threshold,
            "finalScore": self.final_score,
            "scores": self.scores,
            "judgePolicy": str(self.judge_policy),
            "participants": [
                {"code": p.code, "role": p.role, "stance": p.stance, "weight": p.weight}
                for p in self.participants
            ],
            "transcript": self.transcript(),
            "verdict": self.verdict,
        }

    @classmethod
    def from_output(cls, output: dict[str, Any]) -> "DebateSession":
        """Rebuild a finished session from a debate-round node's output."""
        participants = {
            str(p.get("code")): DebateParticipant.from_config(p)
            for p in output.get("participants") or []
            if isinstance(p, dict)
        }
        rounds = []
        for entry in output.get("transcript") or []:
            statements = []
            for s in entry.get("statements") or []:
                code = str(s.get("participant") or "")
                participant = participants.get(code) or DebateParticipant(
                    code=code, role=str(s.get("role") or "DEBATER"), stance=str(s.get("stance") or "")
                )
                statements.append(
                    ParticipantStatement(
                        participant=participant,
                        argument=str(s.get("argument") or ""),
                        confidence=normalize_unit(s.get("confidence")),
                        key_points=list(s.get("keyPoints") or []),
                        agreement=normalize_unit(s.get("agreement")),
                        rebuttal=s.get("rebuttal"),
                        position=s.get("position"),
                        error=s.get("error"),
                    )
                )
            rounds.append(DebateRound(int(entry.get("round", 0)), statements, entry.get("score")))
        return cls(
            topic=str(output.get("topic") or ""),
            participants=list(participants.values()),
            max_rounds=int(output.get("maxRounds") or DEFAULT_MAX_ROUNDS),
            convergence_threshold=float(
                output.get("convergenceThreshold") or DEFAULT_CONVERGENCE_THRESHOLD
            ),
            round_number=len(rounds),
            rounds=rounds,
            state=DebateState.DONE,
            converged=bool(output.get("converged")),
            verdict=output.get("verdict"),
        )


# ---------------------------------------------------------------------------
# Convergence scoring
# ---------------------------------------------------------------------------


def normalize_unit(value: Any) -> float | None:
    """Coerce a 0-1 or 0-100 number to [0, 1]; None when not numeric."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    number = float(value)
    if number > 1.0:
        number /= 100.0
    return min(max(number, 0.0), 1.0)


class ConvergenceScorer(ABC):
    """Maps one round's statements to an agreement score in [0, 1]."""

    name: str = ""

    @abstractmethod
    def score(self, statements: list[ParticipantStatement]) -> float:
        ...


class KeyPointOverlapScorer(ConvergenceScorer):
    """Mean pairwise Jaccard similarity of lower-cased key points."""

    name = "keypoint-overlap"

    def score(self, statements: list[ParticipantStatement]) -> float:
        ok = [s for s in statements if s.ok]
        if not ok:
            return 0.0
        if len(ok) < 2:
            return 1.0
        point_sets = [{p.strip().lower() for p in s.key_points if p.strip()} for s in ok]
        total, comparisons = 0.0, 0
        for i in range(len(point_sets)):
            for j in range(i + 1, len(point_sets)):
                union = point_sets[i] | point_sets[j]
                if union:
                    total += len(point_sets[i] & point_sets[j]) / len(union)
                comparisons += 1
        return round(total / comparisons, 2)


class ReportedAgreementScorer(ConvergenceScorer):
    """Mean of each participant's self-reported agreement with the others."""

    name = "reported-agreement"

    def __init__(self, fallback: ConvergenceScorer | None = None):
        self.fallback = fallback or KeyPointOverlapScorer()

    def score(self, statements: list[ParticipantStatement]) -> float:
        reported = [s.agreement for s in statements if s.ok and s.agreement is not None]
        if not reported:
            return self.fallback.score(statements)
        return round(sum(reported) / len(reported), 4)


class ConfidenceSpreadScorer(ConvergenceScorer):
    """1 - (max confidence - min confidence): participants converge as confidences align."""

    name = "confidence-spread"

    def score(self, statements: list[ParticipantStatement]) -> float:
        values = [s.confidence for s in statements if s.ok and s.confidence is not None]
        if len(values) < 2:
            return 1.0 if values else 0.0
        return round(1.0 - (max(values) - min(values)), 4)


SCORERS: dict[str, type[ConvergenceScorer]] = {
    KeyPointOverlapScorer.name: KeyPointOverlapScorer,
    ReportedAgreementScorer.name: ReportedAgreementScorer,
    ConfidenceSpreadScorer.name: ConfidenceSpreadScorer,
}


def get_scorer(name: str | None) -> ConvergenceScorer:
    key = (name or ReportedAgreementScorer.name).strip().lower()
    if key not in SCORERS:
        raise ValueError(f"Unknown convergence scorer '{name}' (expected one of {sorted(SCORERS)})")
    return SCORERS[key]()


# ---------------------------------------------------------------------------
# Verdicts without a judge agent
# ---------------------------------------------------------------------------


def weighted_verdict(session: DebateSession) -> dict[str, Any]:
    """Verdict from the last round: confidence-weighted, best-supported statement wins."""
    last = session.rounds[-1] if session.rounds else DebateRound(0)
    ok = last.successful()
    if not ok:
        return {
            "conclusion": "No participant produced a usable argument.",
            "confidence": 0.0,
            "action": "REVIEW_ONLY",
            "keyFindings": [],
            "dissent": [],
            "policy": str(JudgePolicy.WEIGHTED),
        }

    def support(s: ParticipantStatement) -> float:
        return s.participant.weight * (s.confidence if s.confidence is not None else 0.5)

    total_weight = sum(s.participant.weight for s in ok) or 1.0
    confidence = sum(support(s) for s in ok) / total_weight
    leader = max(ok, key=support)

    actions: Counter[str] = Counter()
    for s in ok:
        if s.position:
            actions[s.position] += support(s)
    action = actions.most_common(1)[0][0] if actions else "REVIEW_ONLY"

    findings: list[str] = []
    for s in sorted(ok, key=support, reverse=True):
        for point in s.key_points:
            if point not in findings:
                findings.append(point)
    return {
        "conclusion": leader.argument,
        "confidence": round(confidence, 4),
        "action": action,
        "keyFindings": findings[:5],
        "dissent": [
            f"{s.participant.stance or s.participant.code}: {s.argument}" for s in ok if s is not leader
        ],
        "policy": str(JudgePolicy.WEIGHTED),
    }


def majority_verdict(session: DebateSession) -> dict[str, Any]:
    """Verdict by head-count over each statement's position (or stance)."""
    verdict = weighted_verdict(session)
    last = session.rounds[-1] if session.rounds else DebateRound(0)
    votes = Counter(s.position or s.participant.stance for s in last.successful())
    if votes:
        winner, count = votes.most_common(1)[0]
        verdict["conclusion"] = f"Majority position: {winner} ({count}/{sum(votes.values())})"
        verdict["votes"] = dict(votes)
    verdict["policy"] = str(JudgePolicy.MAJORITY)
    return verdict


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class DebateCoordinator:
    """
    Drives a DebateSession from ROUND_START to DONE.

    Example:
        coordinator = DebateCoordinator(agent_invoker)
        session = DebateSession(topic="Corn outlook", participants=[...])
        output = await coordinator.run(session, shared_context="...")
    """

    def __init__(
        self,
        agent_invoker: AgentInvoker,
        scorer: ConvergenceScorer | None = None,
        event_bus: EventBus | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
    ):
        self.agent_invoker = agent_invoker
        self.scorer = scorer or ReportedAgreementScorer()
        self.event_bus = event_bus
        self.run_id = run_id
        self.node_id = node_id

    async def run(self, session: DebateSession, shared_context: str = "") -> dict[str, Any]:
        prompts: dict[str, str] = {}
        state = DebateState.ROUND_START

        while True:
            session.transition(state)

            if state == DebateState.ROUND_START:
                session.round_number += 1
                prompts = {
                    p.code: self.build_participant_prompt(session, p) for p in session.participants
                }
                logger.info(
                    f"🗣 Debate round {session.round_number}/{session.max_rounds} "
                    f"({len(session.participants)} participants)"
                )
                state = DebateState.COLLECTING

            elif state == DebateState.COLLECTING:
                statements = await self._collect(session, prompts, shared_context)
                session.rounds.append(DebateRound(session.round_number, statements))
                state = DebateState.CONVERGENCE_CHECK

            elif state == DebateState.CONVERGENCE_CHECK:
                current = session.rounds[-1]
                current.score = self.scorer.score(current.statements)
                logger.info(
                    f"   Round {session.round_number} agreement {current.score:.2f} "
                    f"(threshold {session.convergence_threshold:.2f})"
                )
                await self._emit(
                    EventType.DEBATE_ROUND_COMPLETED,
                    {"round": session.round_number, "score": current.score},
                )
                if current.score >= session.convergence_threshold:
                    session.converged = True
                    await self._emit(
                        EventType.DEBATE_CONVERGED,
                        {"round": session.round_number, "score": current.score},
                    )
                    state = DebateState.JUDGING
                elif session.round_number < session.max_rounds:
                    state = DebateState.ROUND_START
                else:
                    logger.info(
                        f"   No convergence after {session.max_rounds} rounds, forcing judgement"
                    )
                    state = DebateState.JUDGING

            elif state == DebateState.JUDGING:
                session.verdict = await self._judge(session, shared_context)
                state = DebateState.DONE

            else:
                break

        return session.to_output()

    # === PROMPTS ===

    def build_participant_prompt(
        self, session: DebateSession, participant: DebateParticipant
    ) -> str:
        lines = [
            f'You are "{participant.role}" in a structured multi-party debate.',
            f"Your stance: {participant.stance or 'neutral analysis'}",
            "",
            f"Topic: {session.topic}",
            f"Round {session.round_number} of {session.max_rounds}",
            "",
            "Requirements:",
            "1. Argue clearly from your stance, citing data and reasoning.",
            "2. In later rounds, respond to the other participants' previous points.",
            "3. Report how far you now agree with the other participants.",
            "",
            "Respond with JSON:",
            '{"argument": "...", "confidence": 0-1, "keyPoints": ["..."], '
            '"agreement": 0-1, "position": "...", "rebuttal": "..."}',
        ]
        if session.rounds:
            lines += ["", "Previous round:"]
            for s in session.rounds[-1].statements:
                if s.participant.code != participant.code:
                    lines.append(f"- {s.participant.stance or s.participant.code}: {s.argument}")
        return "\n".join(lines)

    def build_judge_prompt(self, session: DebateSession) -> str:
        return "\n".join(
            [
                "You are the judge of a structured multi-party debate.",
                f"Topic: {session.topic}",
                f"Rounds held: {len(session.rounds)} (converged: {session.converged})",
                "Weigh every participant's arguments across all rounds and deliver a verdict.",
                "",
                "Respond with JSON:",
                '{"conclusion": "...", "confidence": 0-1, '
                '"action": "BUY|SELL|HOLD|REDUCE|REVIEW_ONLY", '
                '"keyFindings": ["..."], "dissent": ["..."]}',
            ]
        )

    # === STATES ===

    async def _collect(
        self, session: DebateSession, prompts: dict[str, str], shared_context: str
    ) -> list[ParticipantStatement]:
        previous = session.rounds[-1].to_dict()["statements"] if session.rounds else []

        async def ask(participant: DebateParticipant) -> ParticipantStatement:
            context = {
                "topic": session.topic,
                "round": session.round_number,
                "maxRounds": session.max_rounds,
                "stance": participant.stance,
                "sharedContext": shared_context[:MAX_CONTEXT_CHARS],
                "previousStatements": previous,
            }
            raw = await self.agent_invoker.invoke(
                participant.agent_profile_code, prompts[participant.code], context
            )
            return _statement_from_response(participant, raw)

        results = await asyncio.gather(
            *(ask(p) for p in session.participants), return_exceptions=True
        )

        statements = []
        for participant, result in zip(session.participants, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning(f"   Participant {participant.code} failed: {result}")
                statements.append(
                    ParticipantStatement(
                        participant=participant,
                        argument=f"[{participant.role}] unable to participate",
                        error=str(result) or type(result).__name__,
                    )
                )
            else:
                statements.append(result)
        return statements

    async def _judge(self, session: DebateSession, shared_context: str) -> dict[str, Any]:
        if session.judge_policy == JudgePolicy.MAJORITY:
            return majority_verdict(session)
        if session.judge_policy == JudgePolicy.WEIGHTED or not session.judge_agent_profile_code:
            return weighted_verdict(session)

        context = {
            "topic": session.topic,
            "converged": session.converged,
            "scores": session.scores,
            "transcript": session.transcript(),
            "sharedContext": shared_context[:MAX_CONTEXT_CHARS],
        }
        try:
            raw = await self.agent_invoker.invoke(
                session.judge_agent_profile_code, self.build_judge_prompt(session), context
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"   Judge agent failed, falling back to weighted verdict: {e}")
            verdict = weighted_verdict(session)
            verdict["fallback"] = True
            verdict["judgeError"] = str(e)
            return verdict

        parsed = parse_structured_response(raw)
        if not isinstance(parsed, dict):
            verdict = weighted_verdict(session)
            verdict["fallback"] = True
            verdict["judgeError"] = "judge response was not a JSON object"
            verdict["judgeRaw"] = raw if isinstance(raw, str) else json.dumps(raw, default=str)
            return verdict
        parsed.setdefault("policy", str(JudgePolicy.JUDGE_AGENT))
        if "confidence" in parsed:
            parsed["confidence"] = normalize_unit(parsed["confidence"])
        return parsed

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            RunEvent(type=event_type, run_id=self.run_id or "", node_id=self.node_id, data=data)
        )


def _statement_from_response(participant: DebateParticipant, raw: Any) -> ParticipantStatement:
    parsed = parse_structured_response(raw)
    if not isinstance(parsed, dict):
        text = raw if isinstance(raw, str) else json.dumps(raw, default=str)
        return ParticipantStatement(participant=participant, argument=text)
    key_points = parsed.get("keyPoints") or []
    agreement = parsed.get("agreement", parsed.get("agreementScore"))
    return ParticipantStatement(
        participant=participant,
        argument=str(parsed.get("argument") or parsed.get("text") or ""),
        confidence=normalize_unit(parsed.get("confidence")),
        key_points=[str(p) for p in key_points] if isinstance(key_points, list) else [],
        agreement=normalize_unit(agreement),
        rebuttal=parsed.get("rebuttal"),
        position=parsed.get("position") or parsed.get("action"),
    )
