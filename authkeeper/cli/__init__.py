"""
Click CLI for the credential manager.

Commands:
    login        Run an interactive authorization
    reauth       Force re-authorization with the scopes held before
    logout       Revoke and delete the stored credential
    auth-status  Show authorization status

Exit codes: 0 success, 1 terminal auth failure, 2 transient failure,
3 misconfiguration.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import click

from ..config import AuthConfig
from ..exceptions import ConfigurationError
from ..facade import CredentialFacade
from ..redaction import install_redaction
from .auth_commands import auth_status, login, logout, reauth
from .utils import fail

logger = logging.getLogger(__name__)


@dataclass
class CLIContext:
    """Context object passed to all CLI commands.

    Attributes:
        config: Loaded configuration
        subject: Subject to act for (None for the configured default)
        verbose: Verbose output enabled
    """
    config: AuthConfig
    subject: Optional[str] = None
    verbose: bool = False
    _facade: Optional[CredentialFacade] = field(default=None, repr=False)

    @property
    def facade(self) -> CredentialFacade:
        if self._facade is None:
            self._facade = CredentialFacade(self.config, notify=_notify)
        return self._facade

    def close(self) -> None:
        if self._facade is not None:
            self._facade.close()


def _notify(message: str) -> None:
    click.echo(message, err=True)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    install_redaction()


@click.group()
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to configuration file",
    envvar="AUTHKEEPER_CONFIG",
)
@click.option("--subject", help="Subject to act for (default from configuration)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Optional[str],
    subject: Optional[str],
    verbose: bool,
) -> None:
    """
    authkeeper - OAuth credential manager for command-line programs.

    Obtains, stores and renews access credentials so scripts and
    headless tools can call APIs without a web front end.
    """
    ctx.ensure_object(dict)
    setup_logging(verbose)

    facade = ctx.obj.get("facade")
    if facade is not None:
        config = facade.config
    else:
        try:
            config = AuthConfig.from_file(Path(config_file) if config_file else None)
        except ConfigurationError as e:
            fail(e)

    ctx.obj["cli"] = CLIContext(
        config=config, subject=subject, verbose=verbose, _facade=facade
    )
    ctx.call_on_close(ctx.obj["cli"].close)


cli.add_command(login)
cli.add_command(reauth)
cli.add_command(logout)
cli.add_command(auth_status)


def main() -> None:
    """Console script entry point."""
    cli(obj={})

