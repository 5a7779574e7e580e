"""ropelog CLI Package.

Command-line interface for the rope-access field log: job sessions with
local-first storage and an image cache for session photos.

Usage:
    python -m src.cli sessions list
    python -m src.cli sessions add --name "Facade inspection" --hours 6.5
    python -m src.cli cache stats
    python -m src.cli validate config/ropelog_config.yaml
"""

import typer

from src.cli.cache import cache_app
from src.cli.metrics import metrics_command
from src.cli.sessions import sessions_app
from src.cli.validate import validate_command

# Create main app
app = typer.Typer(help="ropelog: rope-access job sessions and image cache")

# Register individual commands
app.command(name="validate")(validate_command)
app.command(name="metrics")(metrics_command)

# Register sub-applications
app.add_typer(cache_app, name="cache")
app.add_typer(sessions_app, name="sessions")

__all__ = [
    "app",
    "cache_app",
    "sessions_app",
    "validate_command",
    "metrics_command",
]
