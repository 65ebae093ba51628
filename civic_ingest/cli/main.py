"""Civic Ingest CLI using Typer."""

import os
from pathlib import Path

import typer
from dotenv import load_dotenv

ENV_CANDIDATES = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]

# Provider name -> environment variable holding its key
AI_KEY_VARIABLES = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def _find_env_file() -> Path | None:
    return next((path for path in ENV_CANDIDATES if path.exists()), None)


_env_file = _find_env_file()
if _env_file is not None:
    load_dotenv(_env_file)

from civic_ingest.cli.ingest import ingest_app  # noqa: E402

app = typer.Typer(
    name="civic-ingest",
    help="Civic Ingest - turns municipal disruption announcements into geocoded messages",
    add_completion=False,
)
app.add_typer(ingest_app, name="ingest")


def _check_ai_config() -> None:
    """Report which AI provider text sources will be processed with."""
    provider = os.environ.get("AI_PROVIDER", "anthropic").lower()
    key_variable = AI_KEY_VARIABLES.get(provider)

    if key_variable is None:
        typer.echo(f"  AI Provider: {provider} (unsupported, use one of {', '.join(AI_KEY_VARIABLES)})")
    elif os.environ.get(key_variable):
        typer.echo(f"  AI Provider: {provider} (configured)")
    else:
        typer.echo(f"  AI Provider: {provider} ({key_variable} missing, text sources will fail)")


def _check_geocoding_config() -> None:
    if os.environ.get("GOOGLE_MAPS_API_KEY"):
        typer.echo("  Google Maps: configured")
    else:
        typer.echo("  Google Maps: Not configured (GOOGLE_MAPS_API_KEY missing)")


@app.command()
def init_db() -> None:
    """Create the ingest tables."""
    from civic_ingest.db.engine import get_database_url
    from civic_ingest.db.engine import init_db as create_tables

    create_tables()
    typer.echo(f"Database ready at {get_database_url()}")


@app.command()
def version() -> None:
    """Show the Civic Ingest version."""
    typer.echo("Civic Ingest v0.1.0")


@app.command()
def check_config() -> None:
    """Show where configuration comes from and which services are set up."""
    from civic_ingest.db.engine import get_database_url
    from civic_ingest.ingestion.registry import get_default_registry

    typer.echo("Civic Ingest Configuration")
    typer.echo("=" * 40)
    typer.echo(f"  .env file: {_env_file or 'Not found'}")

    _check_ai_config()
    _check_geocoding_config()

    registry = get_default_registry()
    typer.echo(f"  Config file: {registry.config_path or 'built-in defaults'}")
    typer.echo(f"  Max age: {registry.ingest.max_age_days} days")
    typer.echo(f"  Max retries: {registry.ingest.max_retry_attempts}")
    typer.echo(f"  Localities: {', '.join(locality.code for locality in registry.list_localities())}")
    typer.echo(f"  Database: {get_database_url()}")


if __name__ == "__main__":
    app()
