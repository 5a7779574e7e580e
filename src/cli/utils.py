"""Shared CLI utilities.

Provides common functionality for all CLI commands.
"""

import asyncio
import functools
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
import typer

from src.models.config import AppConfig
from src.observability.context import correlation_id_context
from src.observability.logging import bind_context, clear_context, configure_logging
from src.services.config_manager import (
    DEFAULT_CONFIG_PATH,
    ConfigManager,
    ConfigValidationError,
)
from src.services.factory import Services, build_services

# Quiet until a config says otherwise
configure_logging(level="WARNING")
logger = structlog.get_logger()

# Type variable for decorator
F = TypeVar("F", bound=Callable)
T = TypeVar("T")

CONFIG_OPTION = typer.Option(
    Path(DEFAULT_CONFIG_PATH),
    "--config",
    "-c",
    help="Path to ropelog config YAML",
)


def load_config(config_path: Path) -> AppConfig:
    """Load configuration and apply its logging settings.

    A missing file falls back to defaults.

    Raises:
        typer.Exit: If configuration is invalid.
    """
    config_manager = ConfigManager(config_path=str(config_path))
    try:
        config = config_manager.load_or_default()
    except ConfigValidationError as e:
        typer.secho(f"Configuration Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    configure_logging(
        level=config.logging.level,
        json_output=config.logging.json_output,
    )
    return config


def run_with_services(
    config: AppConfig,
    action: Callable[[Services], Awaitable[T]],
) -> T:
    """Build services, run one async action with them, then close them."""

    async def _run() -> T:
        services = build_services(config)
        try:
            await services.cache.initialize()
            return await action(services)
        finally:
            await services.close()

    return asyncio.run(_run())


def handle_errors(func: F) -> F:
    """Decorator for consistent error handling.

    Runs the command under a fresh correlation id with the command name
    bound to every log entry, catches exceptions and displays user-friendly
    error messages.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with correlation_id_context():
            bind_context(command=func.__name__)
            try:
                return func(*args, **kwargs)
            except typer.Exit:
                raise
            except Exception as e:
                logger.exception("command_failed")
                typer.secho(f"Error: {e}", fg=typer.colors.RED)
                raise typer.Exit(code=1)
            finally:
                clear_context()

    return wrapper  # type: ignore[return-value]


def format_bytes(size: int) -> str:
    """Human-readable byte count."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"  # pragma: no cover


def format_timestamp(epoch_ms: Optional[int]) -> str:
    if not epoch_ms:
        return "never"
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M")


def display_success(message: str) -> None:
    typer.secho(message, fg=typer.colors.GREEN)


def display_warning(message: str) -> None:
    typer.secho(message, fg=typer.colors.YELLOW)


def display_error(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)


def display_info(message: str) -> None:
    typer.secho(message, fg=typer.colors.CYAN)
