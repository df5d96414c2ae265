"""Main CLI entry point for buildstore.

Provides command-line access to the build cache and to artifact and log
transfers.
"""

import logging
import sys
from typing import Optional

import click
from rich.console import Console

from buildstore.cache import StoreConfig, cache_command
from buildstore.storage import StoreLocator

# Global console for Rich output
console = Console()


def load_config(config_path: Optional[str] = None) -> StoreConfig:
    """Load configuration for a CLI invocation.

    Priority:
    1. Explicit --config/-c JSON file (token still taken from SD_TOKEN)
    2. Environment variables

    Args:
        config_path: JSON config path from CLI context

    Returns:
        StoreConfig instance
    """
    env_config = StoreConfig.from_env()
    if not config_path:
        return env_config
    config = StoreConfig.load(config_path)
    if not config.token:
        config.token = env_config.token
    return config


def build_locator(config: StoreConfig, store_type: str, key: str) -> StoreLocator:
    """Locator for an artifact or log of the current build."""
    if not config.build_id:
        raise click.ClickException("Build id is not configured (set SD_BUILD_ID)")
    return StoreLocator.build(store_type, config.build_id, key)


def fail(error: Exception) -> None:
    console.print(f"[red]✗[/red] Error: {error}", style="red")
    sys.exit(1)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    help="JSON configuration file (default: SD_* environment variables)",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, config_path, verbose):
    """buildstore CLI - Transfer artifacts, logs and build caches.

    Configuration is read from SD_* environment variables, or from a JSON
    file given with --config/-c.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.group()
@click.pass_context
def cache(ctx):
    """Manage build caches - set, get, remove."""
    pass


# ==================== Cache Commands ====================


def run_cache_command(ctx, command: str, scope: str, path: str) -> None:
    try:
        config = load_config(ctx.obj.get("config_path"))
        changed = cache_command(command, scope, path, config=config)

        if command == "set" and not changed:
            console.print(f"[yellow]Cache already current[/yellow] ({scope}: {path})")
        elif command == "get" and not changed:
            console.print(f"[yellow]No cache found[/yellow] ({scope}: {path})")
        else:
            console.print(f"[green]✓[/green] {command} cache SUCCESS ({scope}: {path})")
    except Exception as e:
        console.print(f"[red]✗[/red] {command} cache FAILED")
        fail(e)


@cache.command("set")
@click.argument("scope")
@click.argument("path")
@click.pass_context
def cache_set(ctx, scope, path):
    """Store PATH in the SCOPE cache (pipeline, event or job).

    Nothing is transferred when PATH is unchanged since the last set.

    Example:
        buildstore cache set event node_modules
    """
    run_cache_command(ctx, "set", scope, path)


@cache.command("get")
@click.argument("scope")
@click.argument("path")
@click.pass_context
def cache_get(ctx, scope, path):
    """Restore the SCOPE cache of PATH; files already present are kept.

    A missing cache is not an error.

    Example:
        buildstore cache get event node_modules
    """
    run_cache_command(ctx, "get", scope, path)


@cache.command("remove")
@click.argument("scope")
@click.argument("path")
@click.pass_context
def cache_remove(ctx, scope, path):
    """Delete the SCOPE cache of PATH.

    Example:
        buildstore cache remove job ~/.m2
    """
    run_cache_command(ctx, "remove", scope, path)


# ==================== Artifact and Log Commands ====================


@cli.command("upload")
@click.argument("store_type", metavar="TYPE")
@click.argument("key")
@click.argument("path", type=click.Path(exists=True))
@click.pass_context
def upload(ctx, store_type, key, path):
    """Upload PATH as artifact or log KEY of the current build.

    Directories need an archive KEY (.zip or .tar.gz).

    Example:
        buildstore upload artifact reports/coverage.zip coverage/
    """
    try:
        config = load_config(ctx.obj.get("config_path"))
        locator = build_locator(config, store_type, key)
        with config.make_client() as client:
            client.upload(locator, path)
        console.print(f"[green]✓[/green] Uploaded {path} to {locator.url(config.store_url)}")
    except click.ClickException:
        raise
    except Exception as e:
        fail(e)


@cli.command("download")
@click.argument("store_type", metavar="TYPE")
@click.argument("key")
@click.argument("dest", type=click.Path())
@click.pass_context
def download(ctx, store_type, key, dest):
    """Download artifact or log KEY of the current build to DEST.

    Archives (.zip, .tar.gz) are unpacked into the directory DEST.

    Example:
        buildstore download log step-test logs/test.log
    """
    try:
        config = load_config(ctx.obj.get("config_path"))
        locator = build_locator(config, store_type, key)
        with config.make_client() as client:
            written = client.download(locator, dest)
        console.print(f"[green]✓[/green] Downloaded {key} ({len(written)} paths written)")
    except click.ClickException:
        raise
    except Exception as e:
        fail(e)


@cli.command("remove")
@click.argument("store_type", metavar="TYPE")
@click.argument("key")
@click.pass_context
def remove(ctx, store_type, key):
    """Remove artifact or log KEY of the current build.

    Example:
        buildstore remove artifact reports/coverage.zip
    """
    try:
        config = load_config(ctx.obj.get("config_path"))
        locator = build_locator(config, store_type, key)
        with config.make_client() as client:
            client.remove(locator)
        console.print(f"[green]✓[/green] Removed {key}")
    except click.ClickException:
        raise
    except Exception as e:
        fail(e)


if __name__ == "__main__":
    cli()
