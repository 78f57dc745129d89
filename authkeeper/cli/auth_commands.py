"""
Authorization commands: login, reauth, logout, auth-status.
"""

import json
import sys
from typing import Tuple

import click

from ..exceptions import AuthKeeperError
from ..records import FlowKind, normalize_scopes
from .utils import fail, format_time_remaining, print_status, print_success, print_warning


def _flow_kind(device: bool):
    return FlowKind.DEVICE_CODE if device else None


def _report_record(record) -> None:
    remaining = format_time_remaining(record.seconds_remaining())
    print_success(f"Authorized subject {record.subject_id}")
    scopes = " ".join(sorted(record.granted_scopes)) or "(none)"
    click.echo(f"Scopes:  {scopes}")
    click.echo(f"Expires: in {remaining}")


@click.command()
@click.option(
    "--scope",
    "-s",
    "scopes",
    multiple=True,
    help="Scope to request (repeatable; space-separated lists accepted)",
)
@click.option("--device", is_flag=True, help="Use the device-code flow")
@click.option("--no-browser", is_flag=True, help="Do not open a browser automatically")
@click.pass_context
def login(ctx: click.Context, scopes: Tuple[str, ...], device: bool, no_browser: bool) -> None:
    """Run an interactive authorization."""
    obj = ctx.obj["cli"]
    if no_browser:
        obj.config.open_browser = False

    try:
        record = obj.facade.login(
            normalize_scopes(" ".join(scopes)),
            subject_id=obj.subject,
            flow_kind=_flow_kind(device),
        )
    except AuthKeeperError as e:
        fail(e)

    _report_record(record)
    if not obj.facade.store.durable:
        print_warning("Credential is held in memory only and will not persist")


@click.command()
@click.option("--device", is_flag=True, help="Use the device-code flow")
@click.option("--no-browser", is_flag=True, help="Do not open a browser automatically")
@click.pass_context
def reauth(ctx: click.Context, device: bool, no_browser: bool) -> None:
    """Force re-authorization with the previously granted scopes."""
    obj = ctx.obj["cli"]
    if no_browser:
        obj.config.open_browser = False

    try:
        record = obj.facade.reauth(subject_id=obj.subject, flow_kind=_flow_kind(device))
    except AuthKeeperError as e:
        fail(e)

    _report_record(record)


@click.command()
@click.option(
    "--local-only",
    is_flag=True,
    help="Only delete the stored credential; do not revoke it at the provider",
)
@click.pass_context
def logout(ctx: click.Context, local_only: bool) -> None:
    """Revoke and delete the stored credential."""
    obj = ctx.obj["cli"]
    try:
        held = obj.facade.revoke(subject_id=obj.subject, remote=not local_only)
    except AuthKeeperError as e:
        fail(e)

    if held:
        print_success("Logged out. Run `login` to authorize again.")
    else:
        click.echo("No stored credential; nothing to do.")


@click.command("auth-status")
@click.option("--json", "output_json", is_flag=True, help="JSON output")
@click.pass_context
def auth_status(ctx: click.Context, output_json: bool) -> None:
    """Show authorization status.

    Exits 0 when a credential is held, 1 otherwise.
    """
    obj = ctx.obj["cli"]
    try:
        status = obj.facade.status(subject_id=obj.subject)
    except AuthKeeperError as e:
        fail(e)

    if output_json:
        click.echo(json.dumps(status, indent=2))
    else:
        print_status(status)
        if status["state"] == "unauthenticated":
            click.echo()
            click.echo("Run `login` to authorize.")

    if status["state"] == "unauthenticated":
        sys.exit(1)
