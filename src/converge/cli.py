# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for converge.

Dumb trigger: loads config and templates, runs the engine, renders
outcomes. Exit status is the worst outcome's exit code.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer

from converge import __version__
from converge.assets import FileAssetProvider, get_search_paths
from converge.cache import ContentCache
from converge.config import ConvergeConfig, load_config
from converge.engine import ReconcileResult, reconcile_all, worst_outcome
from converge.errors import ConfigError, ConvergeError, ValidationError
from converge.execute import execute_script
from converge.jobs import CancellationToken, PowerShellJobChannel
from converge.templates import load_templates

app = typer.Typer(
    name="converge",
    help="Reconcile machines against desired-state templates",
    no_args_is_help=True,
)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def _parse_kv_args(args: Optional[List[str]]) -> dict:
    """Parse key=value arguments into a dict.

    Supports:
    - Booleans: true, false
    - Nulls: null, none
    - Numbers: integers and floats
    - JSON: values starting with { or [ are parsed as JSON
    - Strings: everything else
    """
    import json

    if not args:
        return {}
    result = {}
    for arg in args:
        if "=" not in arg:
            raise typer.BadParameter(f"expected key=value, got: {arg}")
        key, value = arg.split("=", 1)
        if value.lower() == "true":
            result[key] = True
        elif value.lower() == "false":
            result[key] = False
        elif value.lower() in ("null", "none"):
            result[key] = None
        elif value.startswith("{") or value.startswith("["):
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                result[key] = value
        else:
            try:
                result[key] = int(value)
            except ValueError:
                try:
                    result[key] = float(value)
                except ValueError:
                    result[key] = value
    return result


def _setup(config_path: Optional[str], verbose: bool) -> ConvergeConfig:
    try:
        config = load_config(config_path)
    except ConfigError as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(1)

    level = logging.DEBUG if verbose else getattr(logging, config.log_level)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    return config


def _render_result(result: ReconcileResult, show_secrets: bool) -> None:
    outcome = result.outcome.value if result.outcome else "unknown"
    typer.echo(f"{result.key or type(result.template).__name__}: {outcome}")

    for difference in result.differences:
        typer.echo(f"  ~ {difference.render(show_encrypted=show_secrets)}")

    for action in result.planned_actions:
        typer.echo(f"  would {action}")
    if result.failed_sub_target:
        typer.echo(f"  failed: {result.failed_sub_target}")
    if result.error:
        typer.echo(f"  error: {result.error}")

    if result.configuration is not None:
        props = result.configuration.properties_for_display(hide_encrypted=not show_secrets)
        for name, value in props.items():
            typer.echo(f"    {name} = {value}")


@app.command()
def ensure(
    template_file: Path = typer.Argument(..., help="Template YAML file"),
    simulate: bool = typer.Option(False, "--simulate", "-n", help="Report what would change without configuring"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Cancel the run after this many seconds"),
    show_secrets: bool = typer.Option(False, "--show-secrets", help="Show encrypted fields unmasked"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Reconcile every resource in a template file.

    Resources are reconciled concurrently. Exit status:
    0 in desired state / configured / would configure, 1 failed,
    2 invalid template, 3 configured with drift, 130 cancelled.

    Examples:
        converge ensure site.yaml --simulate
        converge ensure site.yaml --timeout 600
    """
    config = _setup(config_path, verbose)

    try:
        templates = load_templates(template_file)
    except ValidationError as e:
        typer.echo(f"Invalid template file: {e}", err=True)
        raise typer.Exit(2)

    if not templates:
        typer.echo("No resources to reconcile.")
        return

    channel = PowerShellJobChannel(executable=config.powershell)
    cache = ContentCache(config.staging_root)
    provider = FileAssetProvider(get_search_paths(config.asset_dirs))
    token = CancellationToken(timeout if timeout is not None else config.timeout)

    results = asyncio.run(
        reconcile_all(
            templates,
            channel,
            simulation=simulate,
            cancellation=token,
            cache=cache,
            provider=provider,
        )
    )

    for result in results:
        _render_result(result, show_secrets)

    worst = worst_outcome(r.outcome for r in results if r.outcome is not None)
    if worst.exit_code:
        raise typer.Exit(worst.exit_code)


@app.command("exec")
def exec_command(
    script_file: Path = typer.Argument(..., help="PowerShell script to run"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value variables for the script"),
    simulate: bool = typer.Option(False, "--simulate", "-n", help="Simulation run"),
    run_on_simulation: bool = typer.Option(False, "--run-on-simulation", help="Run the script even when simulating"),
    debug_stream: bool = typer.Option(False, "--debug-stream", help="Capture the Write-Debug stream"),
    verbose_stream: bool = typer.Option(False, "--verbose-stream", help="Capture the Write-Verbose stream"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Cancel after this many seconds"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Execute a PowerShell script once.

    Examples:
        converge exec cleanup.ps1 logDir=E:/Site/Logs keep=3
        converge exec cleanup.ps1 --simulate --run-on-simulation
    """
    config = _setup(config_path, verbose)
    variables = _parse_kv_args(args)

    try:
        script_text = script_file.read_text(encoding="utf-8-sig")
    except OSError as e:
        typer.echo(f"Error: could not read {script_file}: {e}", err=True)
        raise typer.Exit(1)

    channel = PowerShellJobChannel(executable=config.powershell)
    token = CancellationToken(timeout if timeout is not None else config.timeout)

    try:
        result = asyncio.run(
            execute_script(
                channel,
                script_text,
                variables=variables,
                simulation=simulate,
                run_on_simulation=run_on_simulation,
                debug_logging=debug_stream,
                verbose_logging=verbose_stream,
                cancellation=token,
            )
        )
    except ConvergeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if result is None:
        typer.echo("Skipped (simulation)")
    elif result.cancelled:
        typer.echo("Cancelled", err=True)
        raise typer.Exit(130)


@app.command()
def version():
    """Show version information."""
    typer.echo(f"converge version {__version__}")


# Static commands (config, asset)
from converge.commands import asset, config

app.add_typer(config.app, name="config")
app.add_typer(asset.app, name="asset")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
