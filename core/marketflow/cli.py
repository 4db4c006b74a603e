"""
Command-line interface for MarketFlow.

Usage:
    marketflow validate workflow.json
    marketflow validate tpl_arb_hunter_v1
    marketflow plan tpl_sentiment_analyst_v1
    marketflow templates
"""

import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from marketflow.config import EngineConfig
from marketflow.executors.builtin import build_default_registry
from marketflow.graph.model import WorkflowGraph
from marketflow.graph.validator import WorkflowValidator
from marketflow.observability import configure_logging
from marketflow.schemas.workflow import WorkflowDefinition, load_workflow
from marketflow.templates import TEMPLATES, get_template, list_templates


def load_source(source: str) -> WorkflowDefinition:
    """A built-in template id, or a path to a JSON workflow file."""
    if source in TEMPLATES:
        return load_workflow(get_template(source))
    return load_workflow(Path(source).read_text(encoding="utf-8"))


def _load_or_report(source: str) -> WorkflowDefinition | None:
    try:
        return load_source(source)
    except OSError as e:
        print(f"Cannot read {source}: {e}", file=sys.stderr)
    except ValidationError as e:
        print(f"{source} is not a valid workflow document:\n{e}", file=sys.stderr)
    return None


def cmd_validate(args: argparse.Namespace) -> int:
    definition = _load_or_report(args.source)
    if definition is None:
        return 1

    report = WorkflowValidator(build_default_registry()).validate(definition)
    if args.json:
        print(
            json.dumps(
                {
                    "workflowId": definition.workflow_id,
                    "valid": report.valid,
                    "issues": [issue.to_dict() for issue in report.issues],
                },
                indent=2,
            )
        )
    else:
        for issue in report.issues:
            print(issue)
        summary = "valid" if report.valid else f"{len(report.errors)} error(s)"
        print(f"{definition.workflow_id}: {summary}, {len(report.warnings)} warning(s)")
    return 0 if report.valid else 1


def cmd_plan(args: argparse.Namespace) -> int:
    definition = _load_or_report(args.source)
    if definition is None:
        return 1

    report = WorkflowValidator(build_default_registry()).validate(definition)
    if not report.valid:
        for issue in report.errors:
            print(issue, file=sys.stderr)
        return 1

    graph = WorkflowGraph(definition)
    print(f"{definition.workflow_id} ({definition.mode})")
    for index, layer in enumerate(graph.topological_layers(), start=1):
        labels = [
            node_id if graph.nodes[node_id].enabled else f"{node_id} (disabled)"
            for node_id in layer
        ]
        print(f"  layer {index}: {', '.join(labels)}")
    print(f"critical: {', '.join(graph.critical_nodes()) or '-'}")
    if graph.iteration_edges:
        print(f"debate iteration edges: {', '.join(e.id for e in graph.iteration_edges)}")
    return 0


def cmd_templates(args: argparse.Namespace) -> int:
    for template in list_templates():
        print(f"{template['workflowId']:<30} {template['mode']:<7} {template['name']}")
    return 0


def main(argv: list[str] | None = None) -> None:
    config = EngineConfig.load()

    parser = argparse.ArgumentParser(
        prog="marketflow",
        description="MarketFlow - validate and inspect market-analysis workflows",
    )
    parser.add_argument("--log-level", default=config.log_level, help="Logging level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate a workflow file or template")
    validate.add_argument("source", help="Path to a workflow JSON file, or a template id")
    validate.add_argument("--json", action="store_true", help="Print the report as JSON")
    validate.set_defaults(func=cmd_validate)

    plan = subparsers.add_parser("plan", help="Show execution layers and critical nodes")
    plan.add_argument("source", help="Path to a workflow JSON file, or a template id")
    plan.set_defaults(func=cmd_plan)

    templates = subparsers.add_parser("templates", help="List built-in templates")
    templates.set_defaults(func=cmd_templates)

    args = parser.parse_args(argv)
    configure_logging(args.log_level, config.log_format)

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
