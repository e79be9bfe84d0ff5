"""CLI interface for pydrivesync."""

import logging
from pathlib import Path
from typing import Any, Callable, Optional

import click

from .api import DriveClient
from .cli_progress import TransferProgressDisplay
from .config import Config
from .exceptions import (
    DriveAPIError,
    DriveConfigError,
    DriveError,
    DriveNotFoundError,
)
from .models import FileEntry
from .output import OutputFormatter
from .sync import (
    ChangeFeedConsumer,
    DriveRemoteStore,
    SyncAction,
    SyncDirection,
    SyncEngine,
    SyncOptions,
    SyncPair,
    SyncResult,
    SyncStateManager,
    conflict_decision_from_flags,
)
from .utils import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MTIME_TOLERANCE,
    DEFAULT_PATH_WIDTH,
    DEFAULT_TIMEOUT,
    MIN_PATH_WIDTH,
    format_size,
    truncate_string,
)

logger = logging.getLogger(__name__)


def _load_config(ctx: Any) -> Config:
    """Build the configuration from the global options."""
    config_dir = ctx.obj.get("config_dir")
    return Config.load(
        config_dir=Path(config_dir) if config_dir else None,
        access_token=ctx.obj.get("access_token"),
    )


def _require_client(ctx: Any, config: Config) -> DriveClient:
    """Create an API client or exit when no access token is configured."""
    out: OutputFormatter = ctx.obj["out"]
    if not config.is_configured():
        out.error("Access token not configured.")
        out.info("Run 'pydrivesync init' to store an access token")
        ctx.exit(1)
    return DriveClient(config)


@click.group()
@click.option(
    "--access-token",
    "-t",
    envvar="DRIVE_ACCESS_TOKEN",
    help="OAuth access token for the drive API",
)
@click.option(
    "--config-dir",
    envvar="DRIVE_CONFIG_DIR",
    type=click.Path(file_okay=False),
    help="Directory holding the config file, checksum cache and sync state",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pydrivesync")
@click.pass_context
def main(
    ctx: Any,
    access_token: Optional[str],
    config_dir: Optional[str],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """PyDriveSync - Keep a local directory and a drive folder in sync."""
    # Store settings in context for subcommands to access
    ctx.ensure_object(dict)
    ctx.obj["access_token"] = access_token
    ctx.obj["config_dir"] = config_dir
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    # Configure logging based on verbose flag
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pydrivesync").setLevel(logging.DEBUG)
        # Keep the HTTP stack at INFO, its DEBUG output drowns ours
        logging.getLogger("httpx").setLevel(logging.INFO)
        logging.getLogger("httpcore").setLevel(logging.INFO)
    else:
        # Set default logging level to WARNING to suppress debug/info messages
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.option(
    "--access-token",
    "-t",
    prompt="Enter your drive access token",
    hide_input=True,
    help="OAuth access token for the drive API",
)
@click.option(
    "--no-validate",
    is_flag=True,
    help="Store the token without checking it against the API",
)
@click.pass_context
def init(ctx: Any, access_token: str, no_validate: bool) -> None:
    """Initialize pydrivesync configuration.

    Stores the access token in the config file of the configuration
    directory (default: ~/.config/pydrivesync/config).
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx)
    config.access_token = access_token

    if not no_validate:
        # Validate the token by asking for the current change cursor
        out.info("Validating access token...")
        try:
            with DriveClient(config) as client:
                client.get_start_page_token()
            out.success("Access token is valid")
        except DriveAPIError as e:
            out.error(f"Access token validation failed: {e}")
            if not click.confirm("Save access token anyway?", default=False):
                out.warning("Configuration cancelled.")
                ctx.exit(1)

    try:
        config_path = config.save_access_token(access_token)
    except OSError as e:
        out.error(f"Initialization failed: {e}")
        ctx.exit(1)
        return  # Unreachable, but helps type checker

    if out.json_output:
        out.output_json({"config_file": str(config_path)})
    else:
        out.success(f"Configuration saved to {config_path}")
        out.info("You can now use pydrivesync without specifying --access-token")


def sync_options(f: Callable) -> Callable:
    """Attach the options shared by ``sync upload`` and ``sync download``."""
    options = [
        click.option(
            "--keep-local",
            is_flag=True,
            help="Resolve conflicts in favour of the local file",
        ),
        click.option(
            "--keep-remote",
            is_flag=True,
            help="Resolve conflicts in favour of the remote file",
        ),
        click.option(
            "--keep-largest",
            is_flag=True,
            help="Resolve conflicts in favour of the larger file",
        ),
        click.option(
            "--delete-extraneous",
            is_flag=True,
            help="Delete destination items that do not exist on the source side",
        ),
        click.option(
            "--dry-run",
            is_flag=True,
            help="Show what would be synced without syncing",
        ),
        click.option(
            "--timeout",
            type=float,
            default=DEFAULT_TIMEOUT,
            show_default=True,
            help="Abort a transfer after this many seconds without data (0: never)",
        ),
        click.option(
            "--chunksize",
            type=int,
            default=DEFAULT_CHUNK_SIZE,
            show_default=True,
            help="Bytes per upload/download chunk",
        ),
        click.option("--no-progress", is_flag=True, help="Disable progress bars"),
        click.option(
            "--delete-source",
            is_flag=True,
            help="Delete every source file once its transfer is verified",
        ),
        click.option(
            "--workers",
            type=int,
            default=1,
            show_default=True,
            help="Number of parallel transfers",
        ),
        click.option(
            "--full-listing",
            is_flag=True,
            help="List the whole remote folder instead of reading the change feed",
        ),
        click.option(
            "--ignore",
            "-i",
            "ignore",
            multiple=True,
            help="Ignore pattern (gitignore syntax, repeatable)",
        ),
        click.option(
            "--exclude-dot-files",
            is_flag=True,
            help="Skip files and folders whose name starts with a dot",
        ),
        click.option(
            "--mtime-tolerance",
            type=float,
            default=DEFAULT_MTIME_TOLERANCE,
            show_default=True,
            help="Seconds two modification times may differ and still match",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@main.group()
@click.pass_context
def sync(ctx: Any) -> None:
    """Sync a local directory with a drive folder.

    The source side of a run is authoritative: files that are missing or
    differ on the destination side are transferred, extraneous destination
    items are kept unless --delete-extraneous is given.

    'sync list' and 'sync content' show the synced folders and their files.
    """


@sync.command("upload")
@click.argument("path", type=click.Path(file_okay=False))
@click.argument("folder_id", type=str)
@sync_options
@click.pass_context
def sync_upload(ctx: Any, path: str, folder_id: str, **kwargs: Any) -> None:
    """Upload a local directory into a drive folder.

    PATH: Local directory (the source)

    FOLDER_ID: ID of the remote folder (the destination)

    Examples:
        pydrivesync sync upload ./photos 1AbCdEf              # Upload changes
        pydrivesync sync upload ./photos 1AbCdEf --dry-run    # Preview
        pydrivesync sync upload ./docs 1AbCdEf --keep-local   # Local wins
    """
    _run_sync(ctx, SyncDirection.UPLOAD, path, folder_id, **kwargs)


@sync.command("download")
@click.argument("folder_id", type=str)
@click.argument("path", type=click.Path(file_okay=False))
@sync_options
@click.pass_context
def sync_download(ctx: Any, folder_id: str, path: str, **kwargs: Any) -> None:
    """Download a drive folder into a local directory.

    FOLDER_ID: ID of the remote folder (the source)

    PATH: Local directory (the destination, created if missing)

    Examples:
        pydrivesync sync download 1AbCdEf ./photos
        pydrivesync sync download 1AbCdEf ./photos --delete-extraneous
        pydrivesync sync download 1AbCdEf ./photos --workers 4
    """
    _run_sync(ctx, SyncDirection.DOWNLOAD, path, folder_id, **kwargs)


SYNC_ORDER_FIELDS = ("path", "name", "size", "modifiedTime")


def _parse_order(ctx: Any, param: Any, value: str) -> tuple[str, bool]:
    """Parse ``FIELD[ desc]`` into the field name and a descending flag."""
    parts = value.split()
    if (
        not parts
        or len(parts) > 2
        or parts[0] not in SYNC_ORDER_FIELDS
        or (len(parts) == 2 and parts[1].lower() != "desc")
    ):
        raise click.BadParameter(
            f"expected one of {', '.join(SYNC_ORDER_FIELDS)}, "
            "optionally followed by 'desc'",
            ctx=ctx,
            param=param,
        )
    return parts[0], len(parts) == 2


def _size_cell(entry: FileEntry, size_in_bytes: bool) -> str:
    if entry.is_folder:
        return ""
    return str(entry.size) if size_in_bytes else format_size(entry.size)


@sync.command("list")
@click.option("--no-header", is_flag=True, help="Do not print the header row")
@click.pass_context
def sync_list(ctx: Any, no_header: bool) -> None:
    """List the drive folders synced so far.

    Every pair with recorded sync state is shown with the current name of
    its remote folder, or "(missing)" when the folder no longer exists.
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx)
    client = _require_client(ctx, config)

    try:
        rows = []
        for state in SyncStateManager(config.state_dir).list_states():
            try:
                name = client.get_file(state.remote_id).get("name", "")
            except DriveNotFoundError:
                name = "(missing)"
            rows.append(
                {
                    "id": state.remote_id,
                    "name": name,
                    "local_path": state.local_path,
                    "last_sync": state.last_sync,
                }
            )
    except DriveError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    finally:
        client.close()

    if out.json_output:
        out.output_json(rows)
    elif not rows:
        out.info("No synced folders yet.")
    else:
        out.output_table(
            rows,
            ["id", "name", "local_path", "last_sync"],
            {
                "id": "Id",
                "name": "Name",
                "local_path": "Local path",
                "last_sync": "Last sync",
            },
            show_header=not no_header,
        )


@sync.command("content")
@click.argument("folder_id", type=str)
@click.option(
    "--order",
    default="path",
    show_default=True,
    callback=_parse_order,
    help="Sort by path, name, size or modifiedTime; append ' desc' to reverse",
)
@click.option(
    "--path-width",
    type=int,
    default=DEFAULT_PATH_WIDTH,
    show_default=True,
    help=f"Truncate paths to this width (minimum {MIN_PATH_WIDTH}, 0: full)",
)
@click.option("--no-header", is_flag=True, help="Do not print the header row")
@click.option("--bytes", "size_in_bytes", is_flag=True, help="Show sizes in bytes")
@click.pass_context
def sync_content(
    ctx: Any,
    folder_id: str,
    order: tuple[str, bool],
    path_width: int,
    no_header: bool,
    size_in_bytes: bool,
) -> None:
    """List the content of a drive folder recursively.

    FOLDER_ID: ID of the remote folder

    Examples:
        pydrivesync sync content 1AbCdEf
        pydrivesync sync content 1AbCdEf --order "size desc" --bytes
        pydrivesync sync content 1AbCdEf --path-width 0
    """
    out: OutputFormatter = ctx.obj["out"]
    if path_width != 0 and path_width < MIN_PATH_WIDTH:
        raise click.UsageError(
            f"--path-width must be 0 or at least {MIN_PATH_WIDTH}", ctx=ctx
        )

    config = _load_config(ctx)
    client = _require_client(ctx, config)
    try:
        entries = DriveRemoteStore(client).list_tree(folder_id)
    except DriveError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    finally:
        client.close()

    field, descending = order
    sort_keys: dict[str, Callable[[tuple[FileEntry, str]], Any]] = {
        "path": lambda item: item[1],
        "name": lambda item: item[0].name,
        "size": lambda item: item[0].size,
        "modifiedTime": lambda item: item[0].modified_time or "",
    }
    entries = sorted(entries, key=sort_keys[field], reverse=descending)

    if out.json_output:
        out.output_json(
            [
                {
                    "id": entry.id,
                    "path": path,
                    "type": "dir" if entry.is_folder else "bin",
                    "size": entry.size,
                    "modified": entry.modified_time,
                }
                for entry, path in entries
            ]
        )
        return

    rows = [
        {
            "id": entry.id,
            "path": truncate_string(path, path_width),
            "type": "dir" if entry.is_folder else "bin",
            "size": _size_cell(entry, size_in_bytes),
            "modified": entry.modified_time or "",
        }
        for entry, path in entries
    ]
    out.output_table(
        rows,
        ["id", "path", "type", "size", "modified"],
        {
            "id": "Id",
            "path": "Path",
            "type": "Type",
            "size": "Size",
            "modified": "Modified",
        },
        show_header=not no_header,
    )


def _run_sync(
    ctx: Any,
    direction: SyncDirection,
    path: str,
    folder_id: str,
    keep_local: bool,
    keep_remote: bool,
    keep_largest: bool,
    delete_extraneous: bool,
    dry_run: bool,
    timeout: float,
    chunksize: int,
    no_progress: bool,
    delete_source: bool,
    workers: int,
    full_listing: bool,
    ignore: tuple[str, ...],
    exclude_dot_files: bool,
    mtime_tolerance: float,
) -> None:
    """Validate the flags, then run one sync and report its outcome."""
    out: OutputFormatter = ctx.obj["out"]

    # Flag errors are usage errors and must surface before any I/O
    try:
        options = SyncOptions(
            conflict_decision=conflict_decision_from_flags(
                keep_local=keep_local,
                keep_remote=keep_remote,
                keep_largest=keep_largest,
            ),
            delete_extraneous=delete_extraneous,
            dry_run=dry_run,
            timeout=timeout,
            chunk_size=chunksize,
            show_progress=not no_progress,
            delete_source=delete_source,
            workers=workers,
            mtime_tolerance=mtime_tolerance,
            full_listing=full_listing,
        )
        pair = SyncPair(
            local=Path(path),
            remote_id=folder_id,
            direction=direction,
            ignore=list(ignore),
            exclude_dot_files=exclude_dot_files,
        )
    except (DriveConfigError, ValueError) as e:
        raise click.UsageError(str(e), ctx=ctx) from e

    config = _load_config(ctx)
    client = _require_client(ctx, config)
    show_progress = (
        options.show_progress
        and not options.dry_run
        and not out.quiet
        and not out.json_output
    )

    engine: Optional[SyncEngine] = None
    try:
        if show_progress:
            with TransferProgressDisplay() as display:
                engine = SyncEngine(
                    DriveRemoteStore(client),
                    config,
                    output=out,
                    progress_callback=display.callback,
                )
                result = engine.sync_pair(pair, options)
        else:
            engine = SyncEngine(DriveRemoteStore(client), config, output=out)
            result = engine.sync_pair(pair, options)
    except KeyboardInterrupt:
        if engine is not None:
            engine.stop()
        out.warning("\nSync cancelled by user")
        ctx.exit(130)  # Standard exit code for SIGINT
        return
    except DriveError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    finally:
        client.close()

    _report_result(ctx, result)


def _report_result(ctx: Any, result: SyncResult) -> None:
    out: OutputFormatter = ctx.obj["out"]
    if out.json_output:
        out.output_json(result.to_dict())

    if result.conflicts and not out.quiet:
        skipped = [c for c in result.conflicts if c.resolution == SyncAction.SKIP]
        if skipped:
            out.warning(
                f"\n⚠  {len(skipped)} conflict(s) were skipped. "
                "Use --keep-local, --keep-remote or --keep-largest to resolve them."
            )

    if not result.success:
        ctx.exit(1)


@main.command()
@click.option(
    "--page-token",
    "-p",
    help="Cursor to read changes from (default: the current start cursor)",
)
@click.option(
    "--max-changes",
    "-n",
    type=click.IntRange(min=1),
    default=100,
    show_default=True,
    help="Maximum number of changes to show",
)
@click.option(
    "--now",
    is_flag=True,
    help="Only print the cursor pointing at the current end of the feed",
)
@click.pass_context
def changes(
    ctx: Any, page_token: Optional[str], max_changes: int, now: bool
) -> None:
    """List remote changes since a cursor.

    Without --page-token there is nothing to list yet; the current start
    cursor is printed instead, to be passed back later.

    Examples:
        pydrivesync changes --now                 # Remember this cursor
        pydrivesync changes -p 12345              # Changes since then
        pydrivesync changes -p 12345 -n 10        # At most 10 changes
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load_config(ctx)
    client = _require_client(ctx, config)

    try:
        remote = DriveRemoteStore(client)
        consumer = ChangeFeedConsumer(remote)

        if now or not page_token:
            cursor = consumer.start_cursor()
            if out.json_output:
                out.output_json({"cursor": cursor})
            elif out.quiet:
                click.echo(cursor)
            else:
                out.info(f"Current change cursor: {cursor}")
            return

        records = []
        token = page_token
        next_cursor: Optional[str] = None
        while len(records) < max_changes:
            page = remote.changes(token)
            records.extend(page.changes)
            if page.new_start_page_token or not page.next_page_token:
                next_cursor = page.new_start_page_token
                break
            token = page.next_page_token
            next_cursor = token
        records = records[:max_changes]

        if out.json_output:
            out.output_json(
                {
                    "changes": [
                        {
                            "file_id": r.file_id,
                            "removed": r.is_removal,
                            "name": r.file.name if r.file else None,
                            "time": r.time,
                        }
                        for r in records
                    ],
                    "next_cursor": next_cursor,
                }
            )
            return

        if not records:
            out.info("No changes.")
        for record in records:
            if record.is_removal:
                out.print(f"✗ {record.file_id} removed")
            else:
                name = record.file.name if record.file else record.file_id
                out.print(f"~ {name} ({record.file_id}) {record.time or ''}")
        if next_cursor:
            out.info(f"\nNext cursor: {next_cursor}")

    except DriveError as e:
        out.error(str(e))
        ctx.exit(1)
    finally:
        client.close()


if __name__ == "__main__":
    main()
