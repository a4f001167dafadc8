"""Command line entry point."""

import asyncio
import sys
from pathlib import Path
from typing import Optional, Dict, Any

import click

from . import __version__
from .server import ParkServer
from .utils.config import load_config
from .utils.errors import ConfigurationError
from .utils.logging import setup_logging, get_logger


@click.group(invoke_without_command=True)
@click.version_option(__version__, prog_name="park-engine")
@click.pass_context
def main(ctx: click.Context):
    """PARK session engine - run and observe shell sessions."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@main.command()
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='Configuration file (JSON, YAML or TOML)')
@click.option('--host', help='Listen address')
@click.option('--port', type=int, help='Listen port')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
def serve(config_path: Optional[Path], host: Optional[str], port: Optional[int], log_level: Optional[str]):
    """Run the HTTP/WebSocket server until interrupted."""
    overrides: Dict[str, Any] = {}
    if host:
        overrides.setdefault("server", {})["host"] = host
    if port is not None:
        overrides.setdefault("server", {})["port"] = port
    if log_level:
        overrides["logging"] = {"level": log_level}

    try:
        config = load_config(
            config_paths=[config_path] if config_path else None,
            extra_config=overrides or None,
        )
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(2)

    setup_logging(
        app_name=config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        max_bytes=config.logging.max_size,
        backup_count=config.logging.backup_count,
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
    )
    logger = get_logger("park-engine.cli")

    try:
        asyncio.run(ParkServer(config).serve_forever())
    except KeyboardInterrupt:
        logger.info("interrupted")
    except Exception as e:
        logger.error("server_error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
