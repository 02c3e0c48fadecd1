"""CLI interface for PyGSync."""

import logging
from pathlib import Path
from typing import Any, Optional

import click

from .api import DriveClient
from .auth import OAuthCredentials
from .config import CONFIG_KEYS, SECRET_KEYS, config
from .exceptions import ConfigError, GSyncError, SyncAbortedError
from .output import OutputFormatter
from .sync.engine import SyncEngine
from .sync.operations import OperationKind, RunSummary
from .sync.state import StateStoreManager
from .utils import (
    DEFAULT_IGNORE_FILE_NAME,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RATE_LIMIT,
    DEFAULT_WORKERS,
    mask_secret,
)

logger = logging.getLogger(__name__)


@click.group()
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pygsync")
@click.pass_context
def main(ctx: Any, quiet: bool, json: bool, verbose: bool) -> None:
    """PyGSync - Back up local directories to Google Drive."""
    ctx.ensure_object(dict)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pygsync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command("config")
@click.option("--id", "client_id", help="OAuth client ID")
@click.option("--secret", "client_secret", help="OAuth client secret")
@click.option("--refresh-token", help="OAuth refresh token")
@click.option(
    "--files",
    "input_files",
    help="Comma separated list of directories to back up",
)
@click.option("--root-folder", help="Drive folder ID that receives the backups")
@click.option("--drive-id", help="Shared drive ID (omit for My Drive)")
@click.pass_context
def config_command(
    ctx: Any,
    client_id: Optional[str],
    client_secret: Optional[str],
    refresh_token: Optional[str],
    input_files: Optional[str],
    root_folder: Optional[str],
    drive_id: Optional[str],
) -> None:
    """Update the configuration.

    Given values are merged over the stored configuration, which is kept
    in ~/.config/pygsync/config.json. The update is refused if the
    resulting configuration is incomplete.
    """
    out: OutputFormatter = ctx.obj["out"]
    values = {
        "client_id": client_id,
        "client_secret": client_secret,
        "refresh_token": refresh_token,
        "input_files": input_files,
        "root_folder": root_folder,
        "drive_id": drive_id,
    }

    try:
        merged = config.as_dict()
        merged.update({key: value for key, value in values.items() if value})
        complete, reason = config.is_complete(merged)
        if complete:
            config.save(**values)
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if not complete:
        out.error(f"Configuration is incomplete: {reason}")
        ctx.exit(1)

    if out.json_output:
        out.output_json({"saved": True, "config_file": str(config.get_config_path())})
        return

    out.success("Configuration updated!")
    out.info(f"Config file: {config.get_config_path()}")


@main.command()
@click.pass_context
def show(ctx: Any) -> None:
    """Show the current configuration (secrets are masked)."""
    out: OutputFormatter = ctx.obj["out"]

    try:
        values = config.as_dict()
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)

    display = {
        key: (mask_secret(value) if value and key in SECRET_KEYS else value)
        for key, value in values.items()
    }

    if out.json_output:
        out.output_json(display)
        return

    if not any(values.values()):
        out.info(
            "PyGSync is unconfigured. Run 'pygsync config --help' for more "
            "information on how to configure it."
        )
        return

    out.print_summary(
        "Current configuration",
        [(key, display[key] or "-") for key in CONFIG_KEYS],
    )
    complete, reason = config.is_complete(values)
    if not complete:
        out.warning(f"Configuration is incomplete: {reason}")


def _summary_items(summary: RunSummary) -> list[tuple[str, Any]]:
    items: list[tuple[str, Any]] = []
    if summary.dry_run:
        for kind in OperationKind:
            items.append((f"Planned {kind.value}", summary.planned.get(kind, 0)))
        return items
    for kind in OperationKind:
        items.append((f"Completed {kind.value}", summary.count(kind)))
    items.append(("Failed", len(summary.failed)))
    items.append(("Blocked", len(summary.blocked)))
    if summary.cancelled:
        items.append(("Not started", len(summary.cancelled)))
    if summary.root_errors:
        items.append(("Unsynced directories", ", ".join(summary.root_errors)))
    items.append(("Retries", summary.total_retries))
    return items


@main.command()
@click.argument("paths", nargs=-1, type=click.Path(path_type=Path))
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.option(
    "--workers",
    "-w",
    type=click.IntRange(min=1),
    default=DEFAULT_WORKERS,
    show_default=True,
    help="Number of parallel operations",
)
@click.option(
    "--rate-limit",
    type=click.FloatRange(min=0),
    default=DEFAULT_RATE_LIMIT,
    show_default=True,
    help="Maximum API requests per second (0 disables the limit)",
)
@click.option(
    "--retries",
    type=click.IntRange(min=0),
    default=DEFAULT_MAX_RETRIES,
    show_default=True,
    help="Retries of a transient failure before giving up",
)
@click.option(
    "--ignore",
    "-i",
    multiple=True,
    help="Ignore pattern applied to every directory (repeatable)",
)
@click.option(
    "--ignore-file",
    default=DEFAULT_IGNORE_FILE_NAME,
    show_default=True,
    help="Name of the per-directory ignore files",
)
@click.option(
    "--trash",
    is_flag=True,
    help="Move deleted files to the Drive trash instead of deleting them",
)
@click.pass_context
def sync(
    ctx: Any,
    paths: tuple[Path, ...],
    dry_run: bool,
    workers: int,
    rate_limit: float,
    retries: int,
    ignore: tuple[str, ...],
    ignore_file: str,
    trash: bool,
) -> None:
    """Back up directories to Google Drive.

    PATHS are the directories to back up; without PATHS the configured
    input files are used. Every directory is mirrored into its own folder
    inside the configured root folder.

    Examples:
        pygsync sync                          # Back up configured directories
        pygsync sync ~/Documents --dry-run    # Preview a backup
        pygsync sync ~/code -i "*.pyc" -i "build/"
    """
    out: OutputFormatter = ctx.obj["out"]

    if paths:
        roots = [path.expanduser().absolute() for path in paths]
    else:
        roots = config.get_input_paths()
    if not roots:
        out.error(
            "No directories to back up. Pass PATHS or run "
            "'pygsync config --files DIR[,DIR...]'."
        )
        ctx.exit(1)

    try:
        credentials = OAuthCredentials.from_config(config)
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)

    client = DriveClient(credentials, drive_id=config.drive_id, use_trash=trash)
    engine = SyncEngine(
        client,
        state_manager=StateStoreManager(config.get_state_dir()),
        output=out,
        workers=workers,
        rate_limit=rate_limit,
        max_retries=retries,
        ignore_patterns=list(ignore),
        ignore_file_name=ignore_file,
    )

    summary: Optional[RunSummary] = None
    try:
        summary = engine.sync_many(roots, config.root_folder, dry_run=dry_run)
    except SyncAbortedError as e:
        summary = e.summary
        out.error(str(e))
    except GSyncError as e:
        out.error(str(e))
    except KeyboardInterrupt:
        out.warning("Sync cancelled by user")
        ctx.exit(130)
    finally:
        client.close()

    if summary is None:
        ctx.exit(1)

    if out.json_output:
        out.output_json(summary.to_dict())
    elif len(roots) > 1:
        out.print_summary(
            "Dry Run Complete" if dry_run else "Sync Complete",
            _summary_items(summary),
        )

    if not summary.succeeded:
        ctx.exit(1)


if __name__ == "__main__":
    main()
