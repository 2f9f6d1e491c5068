#!/usr/bin/env python3
"""
ethspeed CLI

Command-line interface for the HTTP throughput tester.

Usage:
    ethspeed server                      # Start a speed test server
    ethspeed client -S host:8080         # Run download + upload tests
    ethspeed client -d down -s 50 -c 3   # Three 50 MB download tests
    ethspeed stats -S host:8080          # Show server statistics
    ethspeed config --example            # Print a config file template
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.logging import RichHandler

from .api import create_app, run_api_server
from .client import TestOrchestrator, render_iteration, render_report
from .config import EXAMPLE_CONFIG, load_server_config, load_client_config
from .errors import ConfigError, SpeedTestError
from .stats import StatsAggregator
from .transfer import TestRunner, DIRECTIONS, format_bytes

console = Console()
# Log records go to stderr so --json output stays machine readable
err_console = Console(stderr=True)


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    if verbose:
        level = 'DEBUG'
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False, path_type=Path),
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """ethspeed - HTTP download/upload throughput tester."""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['config_path'] = config_path


@cli.command()
@click.option('--host', default=None, help='Listening host [default: 0.0.0.0]')
@click.option('--port', type=int, default=None, help='Listening port [default: 8080]')
@click.option('--static-dir', type=click.Path(file_okay=False, path_type=Path),
              default=None, help='Directory with the browser UI')
@click.pass_context
def server(ctx, host, port, static_dir):
    """Start a speed test server."""
    try:
        config = load_server_config(ctx.obj['config_path'])
        if host is not None:
            config.host = host
        if port is not None:
            config.port = port
        if static_dir is not None:
            config.static_dir = static_dir
        config.validate()
    except ConfigError as e:
        raise click.UsageError(f"Configuration error: {e}")

    setup_logging(ctx.obj['verbose'], config.log_level)

    stats = StatsAggregator()
    app = create_app(stats, static_dir=config.static_dir)

    console.print(Panel.fit(
        f"[bold green]Speed Test Server[/bold green]\n\n"
        f"Listening: [cyan]http://{config.host}:{config.port}[/cyan]\n"
        f"Download: [yellow]GET /__down?bytes=N[/yellow]\n"
        f"Upload: [yellow]POST /__up?bytes=N[/yellow]\n"
        f"Stats: [yellow]GET /__stats[/yellow]\n"
        f"UI: [blue]{config.static_dir or 'disabled'}[/blue]",
        title="Server Info"
    ))

    log_level = 'debug' if ctx.obj['verbose'] else config.log_level.lower()
    asyncio.run(run_api_server(app, host=config.host, port=config.port, log_level=log_level))

    snapshot = stats.snapshot()
    console.print(f"[green]Server stopped[/green] after {snapshot.uptime_seconds:.0f}s, "
                  f"peak concurrency {snapshot.peak_concurrent}")


@cli.command()
@click.option('-S', '--server', 'server_addr', default=None, help='Server address (host:port)')
@click.option('-d', '--direction', type=click.Choice(DIRECTIONS), default=None,
              help='Test direction [default: both]')
@click.option('-s', '--size', type=int, default=None, help='Size per test in MB [default: 100]')
@click.option('-c', '--count', type=int, default=None, help='Number of tests [default: 1]')
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.pass_context
def client(ctx, server_addr, direction, size, count, as_json):
    """Run download and/or upload speed tests."""
    try:
        config = load_client_config(ctx.obj['config_path'])
        if server_addr is not None:
            config.server = server_addr
        if direction is not None:
            config.direction = direction
        if size is not None:
            config.size = size
        if count is not None:
            config.count = count
        config.validate()
    except ConfigError as e:
        raise click.UsageError(f"Configuration error: {e}")

    setup_logging(ctx.obj['verbose'], config.log_level)

    if not as_json:
        console.print(f"Speed Test - {config.size} MB per run")
        console.print(f"Server: [cyan]{config.server}[/cyan]\n")

    async def run():
        async with TestRunner(config.server, timeout=config.timeout) as runner:
            orchestrator = TestOrchestrator(
                runner,
                direction=config.direction,
                size_mb=config.size,
                count=config.count,
            )

            def on_iteration(index, results):
                if not as_json:
                    render_iteration(console, config.direction, index, results)

            return await orchestrator.run(on_iteration)

    report = asyncio.run(run())

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        console.print()
        render_report(console, report)

    if not report.ok:
        sys.exit(1)


@cli.command()
@click.option('-S', '--server', 'server_addr', default=None, help='Server address (host:port)')
@click.pass_context
def stats(ctx, server_addr):
    """Show server statistics."""
    try:
        config = load_client_config(ctx.obj['config_path'])
    except ConfigError as e:
        raise click.UsageError(f"Configuration error: {e}")

    setup_logging(ctx.obj['verbose'], config.log_level)
    target: Optional[str] = server_addr or config.server

    async def run():
        async with TestRunner(target, timeout=config.timeout) as runner:
            return await runner.fetch_stats()

    try:
        data = asyncio.run(run())
    except SpeedTestError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    console.print(Panel.fit(
        f"[bold]Server Statistics[/bold]\n\n"
        f"Downloads: [yellow]{data['total_downloads']}[/yellow] "
        f"({format_bytes(data['total_bytes_down'])})\n"
        f"Uploads: [yellow]{data['total_uploads']}[/yellow] "
        f"({format_bytes(data['total_bytes_up'])})\n"
        f"Connections: [yellow]{data['total_connections']}[/yellow]\n"
        f"Total data: [yellow]{data['total_data_gb']:.2f} GB[/yellow]\n"
        f"Peak concurrency: [yellow]{data['peak_concurrent']}[/yellow]\n"
        f"Uptime: [yellow]{data['uptime_seconds']}s[/yellow]\n"
        f"Last request: [cyan]{data['last_request'] or 'never'}[/cyan]",
        title=target
    ))


@cli.command('config')
@click.option('--example', is_flag=True, help='Print an example config file')
@click.pass_context
def show_config(ctx, example):
    """Show the effective configuration."""
    if example:
        click.echo(EXAMPLE_CONFIG.strip())
        return

    try:
        server_config = load_server_config(ctx.obj['config_path'])
        client_config = load_client_config(ctx.obj['config_path'])
    except ConfigError as e:
        raise click.UsageError(f"Configuration error: {e}")

    click.echo(json.dumps({
        'server': server_config.to_dict(),
        'client': client_config.to_dict(),
    }, indent=2))


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
