"""Validate command for configuration files.

Validates configuration file syntax and semantics.
"""

from pathlib import Path

import typer

from src.services.config_manager import ConfigManager
from src.cli.utils import handle_errors, display_success, display_error, display_info


@handle_errors
def validate_command(
    config_path: Path = typer.Argument(..., help="Config file to validate"),
):
    """Validate configuration file syntax and semantics."""
    try:
        manager = ConfigManager(config_path=str(config_path))
        config = manager.load_config()
    except Exception as e:
        display_error(f"Validation failed: {e}")
        raise typer.Exit(code=1)

    display_success("Configuration is valid! ✅")
    display_info(f"Cache: {config.cache.cache_dir}")
    display_info(f"Sessions: {config.sessions.sessions_path}")
    if config.remote.is_configured:
        display_info(f"Remote: {config.remote.base_url}")
    else:
        display_info("Remote: disabled (local-only)")
