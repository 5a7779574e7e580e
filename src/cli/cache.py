"""Image cache commands.

Inspect and maintain the on-disk image cache.
"""

from pathlib import Path
from typing import Optional

import typer

from src.cli.utils import (
    CONFIG_OPTION,
    handle_errors,
    load_config,
    run_with_services,
    display_success,
    display_warning,
    display_info,
    format_bytes,
    format_timestamp,
)
from src.services.factory import Services

cache_app = typer.Typer(help="Manage the image cache")


@cache_app.command(name="stats")
@handle_errors
def cache_stats(config_path: Path = CONFIG_OPTION):
    """Show cache size, entry count and last cleanup time."""
    config = load_config(config_path)

    async def _stats(services: Services):
        return await services.cache.get_cache_stats()

    stats = run_with_services(config, _stats)

    typer.echo(f"Cache directory: {config.cache.cache_dir}")
    typer.echo(f"Entries:         {stats.entry_count}")
    typer.echo(
        f"Size:            {format_bytes(stats.total_size)} / "
        f"{format_bytes(stats.max_size)} ({stats.usage_ratio:.0%})"
    )
    typer.echo(f"Last cleanup:    {format_timestamp(stats.last_cleanup)}")


@cache_app.command(name="get")
@handle_errors
def cache_get(
    url: str = typer.Argument(..., help="Image URL"),
    config_path: Path = CONFIG_OPTION,
):
    """Print the cached path for URL (exit 1 on a miss)."""
    config = load_config(config_path)

    async def _get(services: Services):
        return await services.cache.get_cached_image(url)

    path = run_with_services(config, _get)
    if path is None:
        display_warning("Not cached")
        raise typer.Exit(code=1)
    typer.echo(str(path))


@cache_app.command(name="put")
@handle_errors
def cache_put(
    url: str = typer.Argument(..., help="Image URL (cache key source)"),
    source: Optional[str] = typer.Argument(
        None, help="Local path, file:// URI or URL to read from (default: URL)"
    ),
    config_path: Path = CONFIG_OPTION,
):
    """Copy an image into the cache."""
    config = load_config(config_path)

    async def _put(services: Services):
        return await services.cache.cache_image(url, source or url)

    path = run_with_services(config, _put)
    display_success(f"Cached: {path}")


@cache_app.command(name="remove")
@handle_errors
def cache_remove(
    url: str = typer.Argument(..., help="Image URL"),
    config_path: Path = CONFIG_OPTION,
):
    """Remove one image from the cache."""
    config = load_config(config_path)

    async def _remove(services: Services):
        await services.cache.remove_cached_image(url)

    run_with_services(config, _remove)
    display_success("Removed")


@cache_app.command(name="cleanup")
@handle_errors
def cache_cleanup(config_path: Path = CONFIG_OPTION):
    """Evict expired entries and enforce the size budget."""
    config = load_config(config_path)

    async def _cleanup(services: Services):
        before = await services.cache.get_cache_stats()
        await services.cache.cleanup()
        await services.cache.ensure_cache_space()
        return before, await services.cache.get_cache_stats()

    before, after = run_with_services(config, _cleanup)
    display_success(
        f"Cleanup complete: {before.entry_count} -> {after.entry_count} entries, "
        f"{format_bytes(after.total_size)}"
    )


@cache_app.command(name="clear")
@handle_errors
def cache_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Path = CONFIG_OPTION,
):
    """Delete every cached image."""
    if not yes and not typer.confirm("Delete every cached image?"):
        display_info("Aborted")
        raise typer.Exit(code=0)

    config = load_config(config_path)

    async def _clear(services: Services):
        await services.cache.clear_cache()
        return await services.cache.get_cache_stats()

    stats = run_with_services(config, _clear)
    if stats.entry_count:
        display_warning(f"Cache not fully cleared ({stats.entry_count} entries left)")
        raise typer.Exit(code=1)
    display_success("Cache cleared")
