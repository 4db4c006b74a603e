"""
MarketFlow - a workflow engine for market-analysis pipelines.

Workflows are JSON DAGs of typed nodes (triggers, data fetches, formulas,
agent calls, multi-agent debates, risk gates, notifications). Run them with
:class:`marketflow.runtime.engine.WorkflowEngine`.
"""

__version__ = "0.1.0"
