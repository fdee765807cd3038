"""
Command-line interface and entry points for pipebricks.

A pipeline definition file (JSON or YAML) holds the fields of a ``Pipeline``
plus an optional ``connection_profiles`` mapping of profile id to connection
string. Each command loads the definition into in-memory repositories and
calls the orchestrator.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from pipebricks.bootstrap import load_builtin_connectors
from pipebricks.connectors.registry import test_connection
from pipebricks.core.connection_resolver import StaticConnectionResolver
from pipebricks.core.logger import configure_root_logger, get_logger
from pipebricks.core.repositories import InMemoryPipelineRepository, InMemoryRunLogRepository
from pipebricks.models.pipeline import Pipeline
from pipebricks.orchestrator import RunOrchestrator
from pipebricks.settings import EngineSettings

logger = get_logger(__name__)

COMMANDS = ("run", "dry-run", "automap", "schema")


def load_config(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_file, "r", encoding="utf-8") as f:
        if config_file.suffix == ".json":
            config = json.load(f)
        elif config_file.suffix in (".yaml", ".yml"):
            config = yaml.safe_load(f)
        else:
            raise ValueError(f"Unsupported config format: {config_file.suffix}. Use .json or .yaml")
    if not isinstance(config, dict):
        raise ValueError("Pipeline definition must be a mapping")
    logger.info(f"Loaded config from {config_path}")
    return config


def build_orchestrator(
    config: Dict[str, Any], settings: Optional[EngineSettings] = None
) -> Tuple[RunOrchestrator, Pipeline]:
    config = dict(config)
    profiles = config.pop("connection_profiles", None) or {}
    pipeline = Pipeline.model_validate(config)
    orchestrator = RunOrchestrator(
        InMemoryPipelineRepository([pipeline]),
        InMemoryRunLogRepository(),
        connection_resolver=StaticConnectionResolver(profiles),
        engine_settings=settings,
    )
    return orchestrator, pipeline


def main(
    config_path: Optional[str] = None,
    config_dict: Optional[Dict[str, Any]] = None,
    *,
    command: str = "run",
    sample_size: Optional[int] = None,
    settings: Optional[EngineSettings] = None,
) -> Dict[str, Any]:
    """
    Main entry point for running a command against a pipeline definition.

    Args:
        config_path: Path to a JSON/YAML pipeline definition
        config_dict: Pipeline definition as a dictionary
        command: One of run, dry-run, automap, schema
        sample_size: Preview size for dry-run

    Returns:
        JSON-serializable result of the command

    Example:
        >>> from pipebricks.cli import main
        >>> result = main(config_dict={"name": "demo", "source": {...}, "destination": {...}})
        >>> result["status"]
        'Success'
    """
    if command not in COMMANDS:
        raise ValueError(f"Unknown command {command!r}; expected one of {', '.join(COMMANDS)}")
    if config_dict:
        config = config_dict
        logger.info("Using provided config dictionary")
    elif config_path:
        config = load_config(config_path)
    else:
        raise ValueError("Either config_path or config_dict must be provided")

    orchestrator, pipeline = build_orchestrator(config, settings)
    logger.info(f"Executing {command} for pipeline '{pipeline.name}'")

    if command == "run":
        run = orchestrator.run_pipeline(pipeline.id, triggered_by="cli")
        return run.model_dump(mode="json", exclude={"config_snapshot"})
    if command == "dry-run":
        return orchestrator.dry_run(pipeline, sample_size).model_dump(mode="json")
    if command == "automap":
        mappings = orchestrator.automap(pipeline.id)
        return {"field_mappings": [m.model_dump(mode="json") for m in mappings]}
    return {"fields": orchestrator.test_source_schema(pipeline.source)}


def cli() -> None:
    """
    Command-line interface for pipebricks.

    Usage:
        pipebricks run pipeline.yaml
        pipebricks dry-run pipeline.yaml --sample-size 5
        pipebricks automap pipeline.json
        pipebricks schema pipeline.json
        pipebricks test-connection csv ./data/input.csv
    """
    parser = argparse.ArgumentParser(prog="pipebricks", description="Pipeline execution engine")
    parser.add_argument("--log-level", default=None, help="Log level for pipebricks loggers")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    for name, help_text in (
        ("run", "Run a pipeline once"),
        ("dry-run", "Preview source, mapped and transformed records without writing"),
        ("automap", "Propose field mappings"),
        ("schema", "List the source's fields"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("config", help="Path to pipeline definition (JSON or YAML)")
        if name == "dry-run":
            sub.add_argument("--sample-size", type=int, default=None)

    conn_parser = subparsers.add_parser("test-connection", help="Check that a connection can be opened")
    conn_parser.add_argument("provider", help="Connector type token, e.g. csv, postgresql, milvus")
    conn_parser.add_argument("connection_string")

    args = parser.parse_args()
    settings = EngineSettings.from_env()
    configure_root_logger(args.log_level or settings.log_level)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        if args.command == "test-connection":
            load_builtin_connectors()
            result = test_connection(args.provider, args.connection_string).model_dump(mode="json")
            ok = result["success"]
        else:
            result = main(
                config_path=args.config,
                command=args.command,
                sample_size=getattr(args, "sample_size", None),
                settings=settings,
            )
            ok = result.get("status", "Success") != "Failed"
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    cli()
