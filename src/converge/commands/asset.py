# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Asset command for converge.

Stages script assets into the content cache.
"""

from typing import Optional

import typer

from converge.assets import FileAssetProvider, get_search_paths
from converge.cache import ContentCache
from converge.config import load_config
from converge.errors import ConfigError, StagingFailed

app = typer.Typer(help="Resolve and stage script assets")


@app.command("stage")
def stage_command(
    reference: str = typer.Argument(..., help="Asset reference, e.g. global::WebBaseline.ps1"),
    extension: Optional[str] = typer.Option(None, "--extension", "-e", help="Extension of the staged file"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Materialize an asset and print the staged path.

    Staging the same content again prints the same path and writes nothing.

    Examples:
        converge asset stage global::WebBaseline.ps1
        converge asset stage Settings --extension .psd1
    """
    try:
        config = load_config(config_path)
    except ConfigError as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(1)

    cache = ContentCache(config.staging_root)
    provider = FileAssetProvider(get_search_paths(config.asset_dirs))

    try:
        path = cache.materialize(reference, provider, extension)
    except StagingFailed as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(str(path))
