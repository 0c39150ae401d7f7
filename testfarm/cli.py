"""
Command-line interface for testfarm.

    testfarm run -H buildbox1 -H buildbox2 -j apiserver -j worker
    testfarm run --config farm.yaml --jobs-file suites.txt -vv
    testfarm check -H buildbox1
    testfarm config show
    testfarm config init
"""

import functools
import sys
from pathlib import Path

import click
import yaml
from omegaconf import OmegaConf
from rich.console import Console
from rich.table import Table

from .config import (
    ConfigLoadError,
    build_settings,
    example_config,
    get_user_config_path,
    load_config,
    setup_logging,
)
from .farm import JOB_ORDERS, SETUP_ERROR_POLICIES, TestFarm
from .remote import RemoteSession, SetupError

console = Console(stderr=True)


def _load_settings(config_file, overrides, verbose, require_jobs=True):
    """Load settings, exiting with status 2 on configuration errors."""
    try:
        settings = build_settings(
            load_config(config_file, overrides), require_jobs=require_jobs
        )
    except ConfigLoadError as e:
        setup_logging(verbose)
        console.print(f"[red]{e}[/red]")
        sys.exit(2)
    setup_logging(verbose or settings.verbosity)
    return settings


def _session_factory(settings):
    return functools.partial(
        RemoteSession.establish,
        commands=settings.commands,
        options=settings.session_options,
    )


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def testfarm(ctx, version):
    """
    testfarm - run test suites across a pool of build machines over SSH

    Each host gets one interactive shell session; suites are pulled from a
    shared queue and their output is printed as it comes back:

        testfarm run -H buildbox1 -H buildbox2 -j apiserver -j state
        testfarm run --config farm.yaml
    """
    if version:
        from . import __version__

        click.echo(f"testfarm {__version__}")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(0)


@testfarm.command()
@click.option(
    "-c", "--config", "config_file", type=click.Path(), help="Configuration file"
)
@click.option(
    "-H",
    "--host",
    "hosts",
    multiple=True,
    help="Host to run on: host, user@host or user@host:port (repeatable)",
)
@click.option("-j", "--job", "jobs", multiple=True, help="Suite to run (repeatable)")
@click.option(
    "--jobs-file", type=click.Path(), help="File with one suite identifier per line"
)
@click.option(
    "--order",
    type=click.Choice(JOB_ORDERS),
    help="Queue order of the suites (default: configured or reverse)",
)
@click.option(
    "--on-setup-error",
    type=click.Choice(SETUP_ERROR_POLICIES),
    help="Abort the run or skip the host when a session cannot be set up",
)
@click.option("--timeout", "test_timeout", help="Value substituted for {timeout}")
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v, -vv, -vvv)")
def run(
    config_file, hosts, jobs, jobs_file, order, on_setup_error, test_timeout, verbose
):
    """Run every suite once, spread across the configured hosts."""
    overrides = {
        "hosts": list(hosts) or None,
        "jobs": list(jobs) or None,
        "jobs_file": jobs_file,
        "job_order": order,
        "on_setup_error": on_setup_error,
        "test_timeout": test_timeout,
    }
    settings = _load_settings(config_file, overrides, verbose)

    farm = TestFarm(
        settings.hosts,
        _session_factory(settings),
        job_order=settings.job_order,
        on_setup_error=settings.on_setup_error,
        poll_interval=settings.poll_interval,
    )

    def on_setup(outcome):
        if outcome.ok:
            console.print(f"[green]✓[/green] Session established on {outcome.host}")
        else:
            console.print(f"[yellow]Skipping {outcome.host}: {outcome.error}[/yellow]")

    def on_result(result):
        click.echo(result.output, nl=False)

    console.print(f"Running {len(settings.jobs)} suites on {len(settings.hosts)} hosts")
    try:
        report = farm.run(settings.jobs, on_result=on_result, on_setup=on_setup)
    except SetupError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    for worker in report.failed_workers:
        console.print(
            f"[red]Worker on {worker.host} failed after {worker.completed} "
            f"suites: {worker.error}[/red]"
        )
    if report.missing:
        console.print(
            f"[red]{report.missing} of {report.total} suites produced no result[/red]"
        )
    if not report.ok:
        sys.exit(1)
    console.print(f"[green]Collected {len(report.results)} results[/green]")


@testfarm.command()
@click.option(
    "-c", "--config", "config_file", type=click.Path(), help="Configuration file"
)
@click.option("-H", "--host", "hosts", multiple=True, help="Host to check (repeatable)")
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v, -vv, -vvv)")
def check(config_file, hosts, verbose):
    """Open and close a session on every host to check connectivity."""
    settings = _load_settings(
        config_file, {"hosts": list(hosts) or None}, verbose, require_jobs=False
    )

    factory = _session_factory(settings)
    outcomes = []
    for host in settings.hosts:
        try:
            session = factory(host)
        except SetupError as e:
            outcomes.append((host, e))
            continue
        session.close()
        outcomes.append((host, None))

    table = Table(title="Hosts", show_header=True, header_style="bold magenta")
    table.add_column("Host", style="cyan", no_wrap=True)
    table.add_column("Status", justify="center")
    table.add_column("Detail")
    for host, error in outcomes:
        if error is None:
            table.add_row(str(host), "[green]ok[/green]", "")
        else:
            table.add_row(str(host), "[red]failed[/red]", str(error))
    console.print(table)

    if any(error is not None for _, error in outcomes):
        sys.exit(1)


@testfarm.group(name="config")
def config_cli():
    """Show or create testfarm configuration."""
    pass


@config_cli.command(name="show")
@click.option(
    "-c", "--config", "config_file", type=click.Path(), help="Configuration file"
)
def config_show(config_file):
    """Print the merged configuration as YAML."""
    try:
        config = load_config(config_file)
    except ConfigLoadError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(2)
    click.echo(OmegaConf.to_yaml(config), nl=False)


@config_cli.command(name="init")
@click.option(
    "--path",
    "config_path",
    type=click.Path(),
    help="Where to write the file (default: user config file)",
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(config_path, force):
    """Write an example configuration file."""
    path = Path(config_path) if config_path else get_user_config_path()
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists (use --force)[/yellow]")
        sys.exit(1)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(example_config(), f, default_flow_style=False, sort_keys=False)
    console.print(f"Created example configuration file: {path}")
