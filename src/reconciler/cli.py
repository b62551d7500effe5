"""Device reconciliation CLI (unifi-reconcile).

Usage:
    unifi-reconcile adopt aa:bb:cc:dd:ee:ff
    unifi-reconcile update aa:bb:cc:dd:ee:ff --name office-ap
    unifi-reconcile forget aa:bb:cc:dd:ee:ff --site lab
    unifi-reconcile wait-ready --timeout 120

The controller endpoint and timing policy come from the environment
(UNIFI_API, UNIFI_SITE, ADOPT_TIMEOUT, ...).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

import click

from .config import ConfigurationError, EngineConfig
from .main import EXIT_FAILURE, run_transition, run_wait_ready, setup_logging
from .orchestrator import Operation


def load_config() -> EngineConfig:
    """Load engine configuration, turning validation errors into a clean exit.

    Raises:
        click.exceptions.Exit: With code 1 if the configuration is invalid.
    """
    try:
        return EngineConfig.from_env()
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        raise click.exceptions.Exit(EXIT_FAILURE) from e


def run_async(coro: Coroutine[Any, Any, int]) -> None:
    """Run a runner coroutine and exit with its code."""
    code = asyncio.run(coro)
    raise click.exceptions.Exit(code)


site_option = click.option(
    "--site", "-s", default=None, help="Controller site (default: UNIFI_SITE or 'default')"
)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="unifi-reconcile")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Drive network devices into a desired state and wait for convergence.

    \b
    Exit codes:
        0    converged
        1    failed or misconfigured
        130  cancelled (SIGINT/SIGTERM)
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)


# =============================================================================
# Device Commands
# =============================================================================


@cli.command()
@click.argument("mac")
@site_option
def adopt(mac: str, site: str | None) -> None:
    """Adopt a device and wait until it is connected."""
    config = load_config()
    run_async(run_transition(config, Operation.ADOPT, mac, site=site))


@cli.command()
@click.argument("mac")
@click.option("--name", "-n", required=True, help="New device name")
@site_option
def update(mac: str, name: str, site: str | None) -> None:
    """Rename a device and wait until it is connected again."""
    config = load_config()
    run_async(run_transition(config, Operation.UPDATE, mac, site=site, payload={"name": name}))


@cli.command()
@click.argument("mac")
@site_option
def forget(mac: str, site: str | None) -> None:
    """Forget a device and wait until it is gone from the controller."""
    config = load_config()
    run_async(run_transition(config, Operation.FORGET, mac, site=site))


# =============================================================================
# Controller Commands
# =============================================================================


@cli.command("wait-ready")
@click.option(
    "--timeout",
    "-t",
    type=click.FloatRange(min=1),
    default=None,
    help="Startup budget in seconds (default: HARNESS_STARTUP_TIMEOUT)",
)
def wait_ready(timeout: float | None) -> None:
    """Wait until the controller reports it is up."""
    config = load_config()
    run_async(run_wait_ready(config, timeout_seconds=timeout))


if __name__ == "__main__":
    cli()
