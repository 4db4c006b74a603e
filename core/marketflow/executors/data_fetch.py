"""
Data acquisition nodes: ``data-fetch`` and ``futures-data-fetch``.

Both build a SourceDescriptor and a TimeRange from config and delegate to
the DataSource collaborator. Any failure from the source other than an
explicit FatalExecutionError is treated as transient I/O and surfaces as
TransientExecutionError, which the scheduler retries under the node policy.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from marketflow.collaborators import DataSource, SourceDescriptor, TimeRange
from marketflow.errors import FatalExecutionError, TransientExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs, require
from marketflow.runtime.context import RunContext
from marketflow.schemas.run import utc_now
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)

# Early templates used short codes for the internal sources.
LEGACY_DATA_SOURCE_CODES = {
    "INTERNAL_DB": "MARKET_INTEL_INTERNAL_DB",
    "INTERNAL_MARKET_DB": "MARKET_INTEL_INTERNAL_DB",
    "VOLATILITY_DB": "MARKET_EVENT_INTERNAL_DB",
    "market_intel_db": "MARKET_INTEL_INTERNAL_DB",
    "inventory_db": "MARKET_EVENT_INTERNAL_DB",
}

FUTURES_EXCHANGES = {"DCE", "CZCE", "SHFE", "INE", "CFFEX", "GFEX"}
INTERVALS = {"1m", "5m", "15m", "30m", "1h", "4h", "1d", "1w"}


class _FetchExecutor(NodeExecutor):
    default_retry_count = 2
    default_lookback_days = 30

    def __init__(self, data_source: DataSource | None):
        self.data_source = data_source

    def build_source(self, node: WorkflowNode) -> SourceDescriptor:
        raise NotImplementedError

    def build_time_range(self, config: dict[str, Any]) -> TimeRange:
        end = _parse_time(config.get("endTime")) or utc_now()
        start = _parse_time(config.get("startTime"))
        if start is None:
            days = config.get("lookbackDays", self.default_lookback_days)
            start = end - timedelta(days=float(days))
        if start >= end:
            raise FatalExecutionError(f"Empty time range: {start.isoformat()} >= {end.isoformat()}")
        return TimeRange(start=start, end=end)

    def _time_range_problems(self, config: dict[str, Any]) -> list[str]:
        problems = []
        days = config.get("lookbackDays")
        if days is not None and (
            isinstance(days, bool) or not isinstance(days, int | float) or days <= 0
        ):
            problems.append("config.lookbackDays must be a positive number")
        for key in ("startTime", "endTime"):
            if config.get(key) is not None and _parse_time(config[key]) is None:
                problems.append(f"config.{key} is not an ISO-8601 timestamp")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        if self.data_source is None:
            raise FatalExecutionError("No data source collaborator configured")

        config = node.config
        source = self.build_source(node)
        time_range = self.build_time_range(config)
        filters = dict(config.get("filters") or {})
        bound_filters = inputs.bindings.get("filters")
        if isinstance(bound_filters, dict):
            filters.update(bound_filters)

        used_fallback = False
        try:
            records = await self._fetch(source, time_range, filters)
        except TransientExecutionError as e:
            fallback = config.get("fallbackDataSourceCode")
            if not fallback:
                raise
            logger.warning(f"Source {source.code} failed ({e}), trying fallback {fallback}")
            source = SourceDescriptor(kind=source.kind, code=str(fallback), params=source.params)
            records = await self._fetch(source, time_range, filters)
            used_fallback = True

        logger.info(f"📥 {node.id}: {len(records)} record(s) from {source.code}")
        return ExecutionOutcome(
            output={
                "data": records,
                "recordCount": len(records),
                "source": source.to_dict(),
                "timeRange": time_range.to_dict(),
                "filters": filters,
                "fetchedAt": utc_now().isoformat(),
                "usedFallback": used_fallback,
            }
        )

    async def _fetch(
        self, source: SourceDescriptor, time_range: TimeRange, filters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        try:
            records = await self.data_source.fetch(source, time_range, filters)
        except (TransientExecutionError, FatalExecutionError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise TransientExecutionError(
                f"Fetch from {source.code} failed: {e}",
                diagnostics={"source": source.to_dict(), "errorType": type(e).__name__},
            ) from e
        if records is None:
            return []
        if not isinstance(records, list):
            raise FatalExecutionError(
                f"Data source returned {type(records).__name__}, expected a list of records"
            )
        return records


class DataFetchExecutor(_FetchExecutor):
    """``data-fetch``: records from a named internal data source."""

    node_types = ("data-fetch",)
    default_lookback_days = 7

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        problems = []
        if not (config.get("dataSourceCode") or config.get("connectorCode")):
            problems.append("config.dataSourceCode is required")
        filters = config.get("filters")
        if filters is not None and not isinstance(filters, dict):
            problems.append("config.filters must be an object")
        return problems + self._time_range_problems(config)

    def build_source(self, node: WorkflowNode) -> SourceDescriptor:
        raw = str(node.config.get("dataSourceCode") or node.config.get("connectorCode"))
        code = LEGACY_DATA_SOURCE_CODES.get(raw, raw)
        if code != raw:
            logger.warning(f"data-fetch {node.id}: legacy source code {raw} mapped to {code}")
        return SourceDescriptor(
            kind="data-source",
            code=code,
            params={"timeRangeType": node.config.get("timeRangeType", "LAST_N_DAYS")},
        )


class FuturesDataFetchExecutor(_FetchExecutor):
    """``futures-data-fetch``: exchange market data (K-lines, ticks, depth)."""

    node_types = ("futures-data-fetch",)

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        problems = require(config, "symbol")
        exchange = config.get("exchange")
        if exchange is not None and str(exchange).upper() not in FUTURES_EXCHANGES:
            problems.append(f"config.exchange '{exchange}' is not a supported exchange")
        interval = config.get("interval")
        if interval is not None and interval not in INTERVALS:
            problems.append(f"config.interval '{interval}' is not one of {sorted(INTERVALS)}")
        return problems + self._time_range_problems(config)

    def build_source(self, node: WorkflowNode) -> SourceDescriptor:
        config = node.config
        exchange = str(config.get("exchange", "DCE")).upper()
        symbol = str(config["symbol"])
        return SourceDescriptor(
            kind="futures",
            code=f"{exchange}:{symbol}",
            params={
                "exchange": exchange,
                "symbol": symbol,
                "contractType": config.get("contractType", "FUTURES"),
                "dataType": config.get("dataType", "KLINE"),
                "interval": config.get("interval", "1d"),
            },
        )


def _parse_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
