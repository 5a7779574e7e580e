"""Metrics command.

Prints Prometheus metrics after loading the cache and session store so the
gauges reflect what is on disk.
"""

from pathlib import Path

import typer

from src.cli.utils import CONFIG_OPTION, handle_errors, load_config, run_with_services
from src.observability.metrics import get_metrics_text
from src.services.factory import Services


@handle_errors
def metrics_command(config_path: Path = CONFIG_OPTION):
    """Print metrics in Prometheus text format."""
    config = load_config(config_path)

    async def _collect(services: Services):
        await services.cache.get_cache_stats()
        await services.sessions.load()

    run_with_services(config, _collect)
    typer.echo(get_metrics_text().decode("utf-8"), nl=False)
