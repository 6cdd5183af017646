"""Thin CLI wrapper for fab_installer.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console

from fab_installer import __version__
from fab_installer.config import Settings, get_settings, print_settings_json
from fab_installer.errors import FabInstallerError
from fab_installer.log import setup_logging
from fab_installer.types import BuildMode

if TYPE_CHECKING:
    from fab_installer.builds.service import BuildResult

app = typer.Typer(
    name="fab-installer",
    help="Fabric installer builder - build control and node installers",
    no_args_is_help=True,
)
console = Console()

logger = logging.getLogger(__name__)

_state: dict[str, bool] = {"verbose": False}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"fab-installer version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Fabric installer builder - build control and node installers."""
    _state["verbose"] = verbose


def _settings(work_dir: Path | None = None) -> Settings:
    settings = get_settings()
    if work_dir is not None:
        settings = settings.model_copy(update={"work_dir": work_dir})
    setup_logging("DEBUG" if _state["verbose"] else settings.log_level)
    return settings


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        docker_config = (
            str(settings.docker_config) if settings.docker_config else "(docker default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Docker config:       {docker_config}")
        console.print()
        console.print("[bold]Registry:[/bold]")
        console.print(f"  Repository:          {settings.registry_repo}")
        console.print(f"  Prefix:              {settings.registry_prefix}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Show progress:       {settings.show_progress}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Downloads:[/bold]")
        console.print(f"  Workers:             {settings.download_workers}")
        console.print(f"  Timeout (seconds):   {settings.download_timeout}")


build_app = typer.Typer(help="Build installers")
app.add_typer(build_app, name="build")


def _print_result(result: "BuildResult", json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    target = f"{result.kind.value}/{result.name}"
    if result.skipped:
        console.print(f"[blue]Installer for {target} is up to date[/blue]")
    else:
        console.print(f"[green]Built installer for {target}[/green]")
    console.print(f"  Mode: {result.mode.value}")
    console.print(f"  Fingerprint: {result.fingerprint}")
    console.print("  Outputs:")
    for path in result.outputs:
        console.print(f"    {path}")


@build_app.command("control")
def build_control_cmd(
    name: Annotated[str, typer.Argument(help="Control node name")],
    fab: Annotated[
        Path,
        typer.Option("--fab", "-f", help="Path to fab.yaml"),
    ],
    wiring: Annotated[
        Path,
        typer.Option("--wiring", "-w", help="Path to wiring.yaml"),
    ],
    mode: Annotated[
        BuildMode,
        typer.Option("--mode", "-m", help="Output to build"),
    ] = BuildMode.MANUAL,
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", help="Directory receiving the outputs"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the installer of a control node."""
    from fab_installer.artifacts.cache import ArtifactCache
    from fab_installer.builds.service import build_control
    from fab_installer.fab.io import load_fab, load_wiring

    settings = _settings(work_dir)
    try:
        docs = load_fab(fab)
        wiring_docs = load_wiring(wiring)
        with ArtifactCache.from_settings(settings) as cache:
            result = build_control(
                cache, docs, wiring_docs, name, mode, settings.work_dir
            )
    except FabInstallerError as e:
        console.print(f"[red]Build failed: {e}[/red]")
        raise typer.Exit(code=1) from None

    _print_result(result, json_output)


@build_app.command("node")
def build_node_cmd(
    name: Annotated[str, typer.Argument(help="Node name")],
    fab: Annotated[
        Path,
        typer.Option("--fab", "-f", help="Path to fab.yaml"),
    ],
    mode: Annotated[
        BuildMode,
        typer.Option("--mode", "-m", help="Output to build"),
    ] = BuildMode.MANUAL,
    join_token: Annotated[
        str | None,
        typer.Option("--join-token", help="Control plane join token"),
    ] = None,
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", help="Directory receiving the outputs"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the installer of a worker node."""
    from fab_installer.artifacts.cache import ArtifactCache
    from fab_installer.builds.service import build_node
    from fab_installer.fab.io import load_fab

    settings = _settings(work_dir)
    try:
        docs = load_fab(fab)
        with ArtifactCache.from_settings(settings) as cache:
            result = build_node(
                cache, docs, name, mode, settings.work_dir, join_token=join_token
            )
    except FabInstallerError as e:
        console.print(f"[red]Build failed: {e}[/red]")
        raise typer.Exit(code=1) from None

    _print_result(result, json_output)


cache_app = typer.Typer(help="Manage the artifact cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("precache")
def cache_precache(
    fab: Annotated[
        Path,
        typer.Option("--fab", "-f", help="Path to fab.yaml"),
    ],
) -> None:
    """Download every artifact the fabric's installers need."""
    from fab_installer.artifacts.cache import ArtifactCache
    from fab_installer.builds.service import precache
    from fab_installer.fab.io import load_fab

    settings = _settings()
    try:
        docs = load_fab(fab)
        with ArtifactCache.from_settings(settings) as cache:
            fetched = precache(
                cache,
                docs.fab,
                progress=lambda ref: console.print(f"  [blue]{ref}[/blue]"),
            )
    except FabInstallerError as e:
        console.print(f"[red]Precache failed: {e}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]Cached {len(fetched)} artifact(s)[/green]")


@cache_app.command("info")
def cache_info(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show artifact cache information."""
    from fab_installer.artifacts.cache import ArtifactCache

    settings = _settings()
    with ArtifactCache.from_settings(settings) as cache:
        info = cache.info()
        entries = cache.entries()

    if json_output:
        info["artifacts"] = [
            {"name": e.name, "oci": e.oci, "size_bytes": e.size_bytes} for e in entries
        ]
        typer.echo(json.dumps(info, indent=2))
        return

    console.print("[bold]Artifact Cache:[/bold]")
    console.print(f"  Cache directory: {info['cache_dir']}")
    console.print(f"  Schema: {info['schema']}")
    console.print(f"  Entries: {info['entries']}")
    console.print(f"  Total size: {info['total_size_human']}")
    if entries:
        console.print()
        for e in entries:
            marker = " (oci)" if e.oci else ""
            console.print(f"  [green]{e.name}[/green]{marker}: {e.size_bytes:,} bytes")


@cache_app.command("prune")
def cache_prune(
    all_entries: Annotated[
        bool,
        typer.Option("--all", help="Remove every entry, not only stale data"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would be removed"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Remove stale data from the artifact cache."""
    from fab_installer.artifacts.cache import ArtifactCache

    settings = _settings()
    with ArtifactCache.from_settings(settings) as cache:
        pruned = cache.prune(all_entries=all_entries, dry_run=dry_run)

    if json_output:
        typer.echo(json.dumps({"dry_run": dry_run, "pruned": pruned}, indent=2))
        return

    if not pruned:
        console.print("[yellow]Nothing to prune[/yellow]")
        return
    verb = "Would remove" if dry_run else "Removed"
    console.print(f"[bold]{verb} {len(pruned)} path(s):[/bold]")
    for rel in pruned:
        console.print(f"  {rel}")


recipe_app = typer.Typer(help="Inspect staged installers")
app.add_typer(recipe_app, name="recipe")


@recipe_app.command("show")
def recipe_show(
    install_dir: Annotated[
        Path,
        typer.Argument(help="Staged installer directory"),
    ] = Path("."),
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the recipe of a staged installer."""
    from fab_installer.builds.recipe import load_recipe

    try:
        recipe = load_recipe(install_dir)
    except FabInstallerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(json.dumps(recipe.model_dump(mode="json"), indent=2))
    else:
        console.print(f"  Type: {recipe.type.value}")
        console.print(f"  Name: {recipe.name}")


@app.command()
def install(
    install_dir: Annotated[
        Path,
        typer.Argument(help="Staged installer directory"),
    ] = Path("."),
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Check a staged installer on the target host before bootstrap."""
    from fab_installer.builds.assembler import check_staged

    if verbose:
        _state["verbose"] = True
    _settings()
    try:
        recipe = check_staged(install_dir.resolve())
    except FabInstallerError as e:
        console.print(f"[red]Install failed: {e}[/red]")
        raise typer.Exit(code=1) from None

    logger.info("Staged installer for %s/%s is complete", recipe.type.value, recipe.name)
    console.print(
        f"[green]Installer for {recipe.type.value}/{recipe.name} is ready[/green]"
    )


if __name__ == "__main__":
    app()
