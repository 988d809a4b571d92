"""CLI entry point for the Dropbox transfer tools.

Provides commands:
  - account: Show the account owner
  - du: Show allocated and used space
  - ls: List folder content
  - mkdir: Create folders
  - rm: Delete files or folders
  - get: Download files (skipped when the local content hash matches)
  - put: Upload files (skipped when the remote content hash matches)
  - version: Show the package version
  - config: Manage the access token stored in the system keyring
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated

import keyring
import typer
from keyring.errors import KeyringError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from dbxlib import __version__
from dbxlib.client import DropboxClient
from dbxlib.config import KEY_NAME, SERVICE_NAME, get_access_token, load_transfer_config
from dbxlib.metadata import FileMetadata, FolderMetadata
from dbxlib.models import CommitInfo, TransferConfig, WriteMode
from dbxlib.upload.content_hash import hash_file
from dbxlib.upload.exceptions import RemoteFailureError, TransferError
from dbxlib.upload.progress import TransferProgressTracker
from dbxlib.upload.session import read_chunks

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Dropbox client - chunked, hash-verified file transfers",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage configuration (access token)")
app.add_typer(config_app, name="config")

METRIC_PREFIXES = ["", "k", "M", "G", "T", "P", "E", "Z", "Y"]


@app.callback()
def app_callback(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to transfer_config.json"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log transfer details to stderr"),
    ] = False,
) -> None:
    """Load the transfer configuration shared by all commands."""
    if verbose:
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        pkg_logger = logging.getLogger("dbxlib")
        pkg_logger.addHandler(handler)
        pkg_logger.setLevel(logging.DEBUG)
    try:
        ctx.obj = load_transfer_config(config_path)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Invalid transfer config:[/red] {e}")
        raise typer.Exit(code=1)


def open_client(config: TransferConfig) -> DropboxClient:
    """Build a client from the stored access token."""
    return DropboxClient.from_token(get_access_token(), config)


def _client(ctx: typer.Context) -> DropboxClient:
    config = ctx.obj if isinstance(ctx.obj, TransferConfig) else TransferConfig()
    try:
        return open_client(config)
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def normalize_remote(path: str) -> str:
    """Add a leading slash and strip trailing ones; the root is ``""``."""
    if not path.startswith("/"):
        path = "/" + path
    return path.rstrip("/")


def find_prefix(value: float) -> tuple[float, str]:
    """Return ``(scale, prefix)`` so that ``value / scale`` is below 1000."""
    for exp3, prefix in enumerate(METRIC_PREFIXES):
        scale = 1000.0**exp3
        if abs(value) < 1000.0 * scale:
            return scale, prefix
    return 1.0, ""


def format_bytes(value: int) -> str:
    scale, prefix = find_prefix(value)
    return f"{value / scale:.3g} {prefix}Byte"


def is_not_found(exc: RemoteFailureError) -> bool:
    """True for a ``path/not_found`` lookup error."""
    path_error = exc.error.get("path")
    return (
        exc.tag == "path"
        and isinstance(path_error, dict)
        and path_error.get(".tag") == "not_found"
    )


def _relative_path(path: str | None, prefix: str) -> str:
    path = path or ""
    if prefix and path.lower().startswith(prefix.lower()):
        path = path[len(prefix) :]
    path = path.lstrip("/")
    return path or "."


# ----------------------------------------------------------------------
# Account commands
# ----------------------------------------------------------------------


@app.command()
def account(ctx: typer.Context) -> None:
    """Show account information."""

    async def _run() -> None:
        async with _client(ctx) as dbx:
            acct = await dbx.get_current_account()
        name = acct.name
        console.print(
            f"Account: Name: {escape(name.given_name)} {escape(name.surname)} "
            f"({escape(name.display_name)})"
        )

    _run_command(_run)


@app.command()
def du(ctx: typer.Context) -> None:
    """Show disk usage."""

    async def _run() -> None:
        async with _client(ctx) as dbx:
            usage = await dbx.get_space_usage()
        used = usage.used
        allocated = usage.allocation.allocated
        digits = len(str(max(used, allocated)))
        console.print(
            f"allocated: {allocated:>{digits}} bytes ({format_bytes(allocated)})"
        )
        pct = 100 * used / allocated if allocated else 0.0
        console.print(
            f"used:      {used:>{digits}} bytes ({format_bytes(used)}, {pct:.1f}%)"
        )

    _run_command(_run)


# ----------------------------------------------------------------------
# File commands
# ----------------------------------------------------------------------


@app.command()
def ls(
    ctx: typer.Context,
    filenames: Annotated[
        list[str] | None,
        typer.Argument(help="Files or folders to list (default: root)"),
    ] = None,
    long: Annotated[
        bool, typer.Option("--long", "-l", help="Use a long (detailed) format")
    ] = False,
    recursive: Annotated[
        bool, typer.Option("--recursive", "-R", help="Recursively list subfolders")
    ] = False,
) -> None:
    """List folder content."""
    names = filenames or [""]

    async def _run() -> int:
        failures = 0
        async with _client(ctx) as dbx:
            for raw in names:
                path = normalize_remote(raw)
                try:
                    if path == "":
                        is_folder = True
                    else:
                        meta = await dbx.get_metadata(path)
                        is_folder = isinstance(meta, FolderMetadata)
                    if is_folder:
                        entries = await dbx.list_folder(path, recursive=recursive)
                        prefix = path
                    else:
                        entries = [meta]
                        prefix = path.rsplit("/", 1)[0]
                except TransferError as e:
                    console.print(f"{escape(path)}: {escape(str(e))}")
                    failures += 1
                    continue

                if len(names) > 1:
                    console.print(f"\n{escape(path or '/')}:")
                if long:
                    table = Table(box=None, show_header=False, pad_edge=False)
                    table.add_column("Mode")
                    table.add_column("Size", justify="right")
                    table.add_column("Modified")
                    table.add_column("Path", style="cyan")
                    for entry in entries:
                        if isinstance(entry, FileMetadata):
                            mode, size, modified = "-", str(entry.size), entry.server_modified or ""
                        elif isinstance(entry, FolderMetadata):
                            mode, size, modified = "d", "", ""
                        else:
                            mode, size, modified = "?", "", ""
                        table.add_row(
                            mode, size, modified,
                            escape(_relative_path(entry.path_display, prefix)),
                        )
                    console.print(table)
                else:
                    for entry in entries:
                        console.print(escape(_relative_path(entry.path_display, prefix)))
        return failures

    if _run_command(_run):
        raise typer.Exit(code=1)


@app.command()
def mkdir(
    ctx: typer.Context,
    directorynames: Annotated[list[str], typer.Argument(help="Folders to create")],
) -> None:
    """Create new folders."""

    async def _run() -> int:
        failures = 0
        async with _client(ctx) as dbx:
            for raw in directorynames:
                path = normalize_remote(raw)
                try:
                    await dbx.create_folder(path)
                except TransferError as e:
                    console.print(f"{escape(path)}: {escape(str(e))}")
                    failures += 1
        return failures

    if _run_command(_run):
        raise typer.Exit(code=1)


@app.command()
def rm(
    ctx: typer.Context,
    filenames: Annotated[list[str], typer.Argument(help="Files or folders to delete")],
) -> None:
    """Delete files or folders."""

    async def _run() -> int:
        failures = 0
        async with _client(ctx) as dbx:
            for raw in filenames:
                path = normalize_remote(raw)
                try:
                    await dbx.delete(path)
                except TransferError as e:
                    console.print(f"{escape(path)}: {escape(str(e))}")
                    failures += 1
        return failures

    if _run_command(_run):
        raise typer.Exit(code=1)


@app.command()
def get(
    ctx: typer.Context,
    filenames: Annotated[
        list[str],
        typer.Argument(help="Dropbox files to get, followed by the local destination"),
    ],
) -> None:
    """Download files; skipped when the local copy already has the same content hash."""
    if len(filenames) < 2:
        console.print("[red]Error:[/red] Destination missing")
        raise typer.Exit(code=1)
    destination = Path(filenames[-1])
    sources = [normalize_remote(s) for s in filenames[:-1]]
    if len(sources) > 1 and not destination.is_dir():
        console.print(f"[red]Error:[/red] {escape(str(destination))} is not a directory")
        raise typer.Exit(code=1)

    async def _run() -> int:
        failures = 0
        async with _client(ctx) as dbx:
            for source in sources:
                target = destination / source.rsplit("/", 1)[-1] if destination.is_dir() else destination
                try:
                    meta = await dbx.get_metadata(source) if source else None
                    if not isinstance(meta, FileMetadata):
                        console.print(f"{escape(source or '/')}: is a folder, skipping")
                        failures += 1
                        continue
                    if meta.size == 0:
                        target.write_bytes(b"")
                        continue
                    if (
                        target.is_file()
                        and target.stat().st_size == meta.size
                        and hash_file(target) == meta.content_hash
                    ):
                        logger.info("%s: content hash matches, skipping download", source)
                        continue
                    _, content = await dbx.download(source)
                    target.write_bytes(content)
                except TransferError as e:
                    console.print(f"{escape(source)}: {escape(str(e))}")
                    failures += 1
        return failures

    if _run_command(_run):
        raise typer.Exit(code=1)


@app.command()
def put(
    ctx: typer.Context,
    filenames: Annotated[
        list[str],
        typer.Argument(help="Local files to put, followed by the Dropbox destination"),
    ],
    progress: Annotated[
        bool, typer.Option("--progress/--no-progress", help="Show a progress display")
    ] = True,
) -> None:
    """Upload files; skipped when the remote file already has the same content hash.

    A single file goes through one upload session; several files are
    committed together with one batch commit.
    """
    if len(filenames) < 2:
        console.print("[red]Error:[/red] Destination missing")
        raise typer.Exit(code=1)
    destination = normalize_remote(filenames[-1])
    sources = [Path(s) for s in filenames[:-1]]

    async def _run() -> int:
        failures = 0
        async with _client(ctx) as dbx:
            dest_is_folder = await _is_remote_folder(dbx, destination)
            if len(sources) > 1 and not dest_is_folder:
                console.print(f"[red]Error:[/red] {escape(destination)} is not a folder")
                return 1

            pending: list[tuple[CommitInfo, Path]] = []
            for source in sources:
                if not source.exists():
                    console.print(f"{escape(str(source))}: File not found")
                    failures += 1
                    continue
                if source.is_dir():
                    console.print(f"{escape(str(source))}: is a directory, skipping")
                    failures += 1
                    continue
                target = f"{destination}/{source.name}" if dest_is_folder else destination
                if await _remote_matches(dbx, target, source):
                    logger.info("%s: content hash matches, skipping upload", target)
                    continue
                pending.append((CommitInfo(target, mode=WriteMode.OVERWRITE), source))

            chunk_size = dbx.config.chunk_size
            if len(pending) == 1:
                commit, source = pending[0]
                try:
                    await dbx.upload_file(commit, read_chunks(source, chunk_size))
                except TransferError as e:
                    console.print(f"{escape(commit.path)}: {escape(str(e))}")
                    failures += 1
            elif pending:
                files = [(c, read_chunks(s, chunk_size)) for c, s in pending]
                try:
                    if progress:
                        with TransferProgressTracker(len(files)) as tracker:
                            dbx.progress = tracker
                            await dbx.upload_many(files)
                    else:
                        await dbx.upload_many(files)
                except TransferError as e:
                    console.print(f"[red]Batch upload failed:[/red] {escape(str(e))}")
                    failures += len(pending)
        return failures

    if _run_command(_run):
        raise typer.Exit(code=1)


async def _is_remote_folder(dbx: DropboxClient, path: str) -> bool:
    if path == "":
        return True
    try:
        return isinstance(await dbx.get_metadata(path), FolderMetadata)
    except RemoteFailureError as e:
        if is_not_found(e):
            return False
        raise


async def _remote_matches(dbx: DropboxClient, target: str, source: Path) -> bool:
    try:
        meta = await dbx.get_metadata(target)
    except RemoteFailureError as e:
        if is_not_found(e):
            return False
        raise
    return (
        isinstance(meta, FileMetadata)
        and meta.size == source.stat().st_size
        and meta.content_hash == hash_file(source)
    )


@app.command()
def version() -> None:
    """Show the package version."""
    console.print(f"Version {__version__}")


def _run_command(coro_fn: Callable[[], Awaitable[int | None]]) -> int:
    """Run an async command body, reporting fatal errors uniformly."""
    try:
        return asyncio.run(coro_fn()) or 0
    except TransferError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Config commands
# ----------------------------------------------------------------------


@config_app.command("set-token")
def set_token(
    token: Annotated[
        str,
        typer.Argument(help="Dropbox access token to store in system keyring"),
    ],
) -> None:
    """Store the access token in the system keyring (service: dbxlib-dropbox)."""
    if not token or token.strip() == "":
        console.print("[red]Error:[/red] Access token cannot be empty")
        raise typer.Exit(code=1)

    try:
        keyring.set_password(SERVICE_NAME, KEY_NAME, token)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to store access token: {e}")
        raise typer.Exit(code=1)
    console.print(
        "[green]✓[/green] Access token stored in system keyring "
        f"(service: {SERVICE_NAME})"
    )


@config_app.command("get-token")
def show_token() -> None:
    """Display the stored access token (masked)."""
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if not token:
        console.print(
            "[yellow]No access token found in keyring.[/yellow]\n"
            "Set it with: [bold]dbx config set-token YOUR_TOKEN[/bold]"
        )
        raise typer.Exit(code=1)

    if len(token) > 8:
        masked = token[:8] + "*" * (len(token) - 8)
    else:
        masked = token[:2] + "*" * max(1, len(token) - 2)
    console.print(f"[green]Access token:[/green] {masked}")
    if os.environ.get("DROPBOX_ACCESS_TOKEN"):
        console.print("[dim](DROPBOX_ACCESS_TOKEN is also set; keyring wins)[/dim]")


@config_app.command("remove-token")
def remove_token() -> None:
    """Delete the stored access token from the system keyring."""
    if not keyring.get_password(SERVICE_NAME, KEY_NAME):
        console.print(
            "[yellow]Warning:[/yellow] No access token found in keyring.\n"
            "Nothing to remove."
        )
        return
    try:
        keyring.delete_password(SERVICE_NAME, KEY_NAME)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to remove access token: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] Access token removed from system keyring (service: {SERVICE_NAME})"
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
