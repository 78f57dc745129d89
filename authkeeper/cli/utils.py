"""
CLI utility functions.

Output helpers and formatting shared by the authorization commands.
"""

import sys
from datetime import datetime
from typing import Any, Optional

import click

from ..classifier import exit_code_for


def print_error(message: str) -> None:
    """Print error message to stderr."""
    click.secho(f"Error: {message}", fg="red", err=True)


def print_success(message: str) -> None:
    """Print success message."""
    click.secho(message, fg="green")


def print_warning(message: str) -> None:
    """Print warning message."""
    click.secho(f"Warning: {message}", fg="yellow", err=True)


def fail(error: Exception) -> None:
    """Print the user-facing message for ``error`` and exit with its code."""
    print_error(getattr(error, "user_message", None) or str(error))
    sys.exit(exit_code_for(error))


def format_time_remaining(seconds: Optional[float]) -> str:
    """
    Format seconds into human-readable time remaining.

    Args:
        seconds: Number of seconds

    Returns:
        Formatted string (e.g., "2h 15m", "45m", "expired")
    """
    if seconds is None or seconds <= 0:
        return "expired"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)

    if hours > 0:
        return f"{hours}h {minutes}m"
    elif minutes > 0:
        return f"{minutes}m"
    else:
        return f"{int(seconds)}s"


def print_status(status: dict[str, Any]) -> None:
    """Print authorization status in a formatted way."""
    click.echo()
    click.secho(f"=== {status['subject_id']} ===", bold=True)

    state = status["state"]
    color = "green" if state in ("valid", "refreshing") else "red"
    click.secho(f"State:   {state}", fg=color)
    if status.get("reason"):
        click.echo(f"Reason:  {status['reason']}")

    if status.get("expires_at"):
        expires = datetime.fromisoformat(status["expires_at"])
        remaining = format_time_remaining(status.get("expires_in_seconds"))
        click.echo(f"Expires: {expires.strftime('%Y-%m-%d %H:%M:%S %Z')} ({remaining})")
        click.echo(f"Renewable: {'yes' if status.get('renewable') else 'no'}")

    scopes = status.get("granted_scopes") or []
    click.echo(f"Scopes:  {' '.join(scopes) if scopes else '(none)'}")

    durability = "durable" if status.get("durable") else "not persisted"
    click.echo(f"Storage: {status.get('backend')} ({durability})")
