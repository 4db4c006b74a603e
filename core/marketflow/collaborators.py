"""
External collaborator interfaces.

The engine performs no model inference, price-feed I/O, risk modelling or
message delivery itself. Each of those concerns is reached through one of
the narrow abstract interfaces below; deployments plug in concrete
implementations, tests plug in fakes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from marketflow.risk import RiskLevel
    from marketflow.runtime.context import RunContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeRange:
    """Half-open time window ``[start, end)`` for a data fetch."""

    start: datetime
    end: datetime

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class SourceDescriptor:
    """
    Identifies where records come from.

    ``kind`` is ``"futures"`` for exchange market data (exchange, symbol,
    contract/data type and interval in ``params``) or ``"data-source"`` for
    a named internal source (``code``).
    """

    kind: str
    code: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "code": self.code, **self.params}


class AgentInvoker(ABC):
    """
    Invokes an AI agent profile.

    Implementations should handle:
    - Resolving the agent profile (model, temperature, tools)
    - Model inference
    - Their own rate-limit handling
    """

    @abstractmethod
    async def invoke(
        self,
        agent_profile_code: str,
        system_prompt: str,
        context: dict[str, Any],
    ) -> dict[str, Any] | str:
        """
        Run one agent call.

        Args:
            agent_profile_code: Profile identifying the agent to call
            system_prompt: Instructions for this call
            context: Resolved structured context for the call

        Returns:
            The structured result, or the raw response text for the caller
            to parse.

        Raises:
            TransientExecutionError: for retryable failures (timeouts, 5xx)
            Exception: any other failure is treated as fatal by the caller
        """


class DataSource(ABC):
    """Fetches records (price bars, intel items, inventory rows)."""

    @abstractmethod
    async def fetch(
        self,
        source: SourceDescriptor,
        time_range: TimeRange,
        filters: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Return records for ``source`` within ``time_range`` matching ``filters``."""


class RiskAssessor(ABC):
    """Resolves a named risk check to an ordinal level."""

    @abstractmethod
    async def assess(
        self, check_item: str, run_context: "RunContext"
    ) -> "RiskLevel | str | int":
        """Assess one check item (e.g. ``position_limit``) against the run so far."""


class Notifier(ABC):
    """Delivers rendered messages to notification channels."""

    @abstractmethod
    async def send(self, channels: list[str], message: str) -> dict[str, Any] | None:
        """Send ``message`` to every channel; returns optional delivery receipts."""


class LoggingNotifier(Notifier):
    """Notifier that only writes messages to the log."""

    async def send(self, channels: list[str], message: str) -> dict[str, Any]:
        logger.info(f"📣 [{', '.join(channels) or 'LOG'}] {message}")
        return {"delivered": list(channels), "transport": "log"}


@dataclass
class Collaborators:
    """Bundle of collaborators handed to the built-in executors."""

    agent_invoker: AgentInvoker | None = None
    data_source: DataSource | None = None
    risk_assessor: RiskAssessor | None = None
    notifier: Notifier = field(default_factory=LoggingNotifier)
