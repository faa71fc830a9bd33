"""
Command-line interface for the MyKind controller.

This module provides a CLI for running the controller, validating and
generating its configuration, and running a single reconcile pass
against a live cluster.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import typer
import yaml
from pydantic import ValidationError

from .controllers.mykind_controller import (
    MyKindController,
    MyKindReconciler,
    load_kubernetes_config,
)
from .controllers.ownership_index import OwnershipIndex
from .models.mykind import ControllerConfiguration, ObjectKey
from .utils.events import EventRecorder
from .utils.kubernetes_client import KubernetesObjectStore, StoreError

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

app = typer.Typer(
    name="mykind-controller",
    help="Level-triggered MyKind controller for Kubernetes",
    no_args_is_help=True
)

logger = structlog.get_logger()


SAMPLE_CONFIG: Dict[str, Any] = {
    "namespace": "default",
    "workers": 2,
    "resync_period": 300,
    "retry": {
        "base_delay": 0.005,
        "max_delay": 1000.0,
        "max_retries": 15,
    },
    "template": {
        "container_name": "nginx",
        "image": "nginx:latest",
    },
    "monitoring_port": 8080,
    "enable_metrics": True,
    "log_level": "INFO",
    "log_format": "json",
}


def load_configuration(config_path: str) -> ControllerConfiguration:
    """
    Load and validate configuration from file.

    Args:
        config_path: Path to a YAML or JSON configuration file

    Returns:
        Validated configuration object

    Raises:
        typer.Exit: If configuration is missing or invalid
    """
    config_file = Path(config_path)

    if not config_file.exists():
        typer.echo(f"Error: Configuration file not found: {config_path}", err=True)
        raise typer.Exit(1)

    try:
        with open(config_file, 'r') as f:
            if config_path.endswith('.json'):
                config_data = json.load(f)
            else:
                config_data = yaml.safe_load(f)

        return ControllerConfiguration(**(config_data or {}))

    except ValidationError as e:
        typer.echo("Configuration validation error:", err=True)
        for error in e.errors():
            typer.echo(f"  {error['loc']}: {error['msg']}", err=True)
        raise typer.Exit(1)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)


def setup_logging(log_level: str, log_format: str = "json") -> None:
    """Setup structured logging with specified level and format."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format="%(message)s")

    if log_format == "console":
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.dev.ConsoleRenderer()
            ]
        )


def _print_summary(config: ControllerConfiguration) -> None:
    typer.echo(f"Namespace: {config.namespace or 'all namespaces'}")
    typer.echo(f"Workers: {config.workers}")
    typer.echo(f"Resync period: {config.resync_period}s")
    typer.echo(f"Retry: base {config.retry.base_delay}s, max {config.retry.max_delay}s, "
               f"{config.retry.max_retries} attempts")
    typer.echo(f"Workload image: {config.template.image}")
    typer.echo(f"Metrics enabled: {config.enable_metrics}")


@app.command()
def run(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file",
        envvar="MYKIND_CONTROLLER_CONFIG"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level", "-l",
        help="Logging level (overrides the configuration file)",
        envvar="LOG_LEVEL"
    ),
    log_format: Optional[str] = typer.Option(
        None,
        "--log-format",
        help="Log format, json or console (overrides the configuration file)",
        envvar="LOG_FORMAT"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate configuration without starting controller"
    )
) -> None:
    """
    Start the MyKind controller.

    Loads configuration, connects to the cluster and reconciles MyKind
    resources until interrupted.
    """
    controller_config = load_configuration(config)
    setup_logging(log_level or controller_config.log_level,
                  log_format or controller_config.log_format)

    if dry_run:
        typer.echo("Configuration validation successful (dry run)")
        _print_summary(controller_config)
        return

    controller = MyKindController(controller_config)
    try:
        asyncio.run(_run_controller(controller))
    except KeyboardInterrupt:
        typer.echo("Shutdown requested by user")
    except Exception as e:
        typer.echo(f"Controller failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file"
    )
) -> None:
    """
    Validate configuration file without starting the controller.
    """
    controller_config = load_configuration(config)
    typer.echo("Configuration validation successful")
    _print_summary(controller_config)


@app.command()
def generate_config(
    output: str = typer.Option(
        "config.yaml",
        "--output", "-o",
        help="Output configuration file path"
    ),
    format: str = typer.Option(
        "yaml",
        "--format", "-f",
        help="Configuration format (yaml or json)"
    )
) -> None:
    """
    Generate a sample configuration file.
    """
    if format.lower() not in ("yaml", "json"):
        typer.echo(f"Unsupported format: {format}", err=True)
        raise typer.Exit(1)

    output_path = Path(output)
    try:
        with open(output_path, 'w') as f:
            if format.lower() == 'json':
                json.dump(SAMPLE_CONFIG, f, indent=2)
            else:
                yaml.safe_dump(SAMPLE_CONFIG, f, default_flow_style=False, indent=2, sort_keys=False)
    except OSError as e:
        typer.echo(f"Failed to generate configuration: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Sample configuration generated: {output}")


@app.command()
def reconcile(
    key: str = typer.Argument(..., help="MyKind to reconcile, as namespace/name"),
    config: Optional[str] = typer.Option(
        None,
        "--config", "-c",
        help="Path to configuration file (defaults are used when omitted)"
    ),
) -> None:
    """
    Run a single reconcile pass for one MyKind and print the outcome.

    The ownership index is primed from a fresh Deployment list so that
    stale Deployments are cleaned up exactly as the running controller
    would.
    """
    try:
        object_key = ObjectKey.parse(key)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(2)

    controller_config = load_configuration(config) if config else ControllerConfiguration()
    setup_logging(controller_config.log_level, controller_config.log_format)

    try:
        result = asyncio.run(_reconcile_once(controller_config, object_key))
    except StoreError as e:
        typer.echo(f"Reconcile failed: {type(e).__name__}: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"{object_key}: {result.action.value}" +
               (f" (deleted {result.deleted})" if result.deleted else ""))


async def _reconcile_once(controller_config: ControllerConfiguration, key: ObjectKey):
    load_kubernetes_config(logger)
    store = KubernetesObjectStore(namespace=key.namespace, logger=logger)
    try:
        index = OwnershipIndex(logger=logger)
        index.prime(await store.list_deployments())
        reconciler = MyKindReconciler(
            store=store,
            index=index,
            recorder=EventRecorder(logger=logger, api_client=store.api_client),
            template=controller_config.template,
            logger=logger,
        )
        return await reconciler.reconcile(key)
    finally:
        await store.close()


async def _run_controller(controller: MyKindController) -> None:
    """Run the controller with proper async handling."""
    try:
        await controller.start()
    except asyncio.CancelledError:
        logger.info("Shutdown signal received")
    finally:
        await controller.stop()


def main() -> None:
    """Main entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()
