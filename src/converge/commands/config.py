# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for converge.

Provides basic configuration validation.
"""

from typing import Optional

import typer

from converge.assets import get_search_paths
from converge.config import load_config
from converge.errors import ConfigError

app = typer.Typer(help="Manage and validate configuration")


@app.command()
def validate(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """
    Validate configuration file.

    Checks that the config file is valid YAML with known settings, then
    prints the effective configuration.
    """
    typer.echo("Validating configuration...")
    typer.echo()

    try:
        config = load_config(config_path)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo("Configuration structure is valid")
    typer.echo()
    typer.echo(f"Source: {config.source or '(defaults)'}")
    typer.echo(f"PowerShell: {config.powershell or '(auto)'}")
    typer.echo(f"Staging root: {config.staging_root or '(temp dir)'}")
    typer.echo(f"Timeout: {config.timeout if config.timeout is not None else '(none)'}")
    typer.echo(f"Log level: {config.log_level}")
    typer.echo("Asset search paths:")
    for path in get_search_paths(config.asset_dirs):
        typer.echo(f"  - {path}")
    typer.echo()
    typer.echo("Configuration validation complete!")
