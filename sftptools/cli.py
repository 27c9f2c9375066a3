from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TypeVar

import typer
from InquirerPy import inquirer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import storage
from .encryption import find_ssh_key_for_encryption
from .errors import SftpToolsError
from .models import FanOutResult, RemoteEntry, ServerConfig
from .orchestrator import TransferOrchestrator
from .paths import join_remote, remote_basename, remote_parent

T = TypeVar("T")


class OrderCommands(typer.core.TyperGroup):
    """Custom group to sort commands alphabetically in help."""

    def list_commands(self, ctx):
        return sorted(super().list_commands(ctx))


app = typer.Typer(
    help="SFTP Tools: browse remote servers, upload with backups, fan out to every server.",
    cls=OrderCommands,
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()


class ConsoleReporter:
    """Prints orchestrator messages to the terminal."""

    def _print(self, style: str, message: str, server: str | None) -> None:
        prefix = f"[bold]{server}[/bold] " if server else ""
        console.print(f"{prefix}[{style}]{message}[/{style}]", highlight=False)

    def info(self, message: str, server: str | None = None) -> None:
        self._print("dim", message, server)

    def warning(self, message: str, server: str | None = None) -> None:
        self._print("yellow", message, server)

    def error(self, message: str, server: str | None = None) -> None:
        self._print("red", message, server)


@app.callback()
def main_callback(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


def _run(coro: Awaitable[T]) -> T:
    """Run a coroutine, turning engine errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except SftpToolsError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(130)


def _ask_destination(remote_path: str) -> Path | None:
    answer = typer.prompt("Save to (empty to cancel)", default=remote_basename(remote_path), show_default=True)
    return Path(answer) if answer.strip() else None


def _orchestrator() -> TransferOrchestrator:
    return TransferOrchestrator(
        storage.load_servers(),
        storage.load_settings(),
        reporter=ConsoleReporter(),
        workspace_root=Path.cwd(),
        ask_destination=_ask_destination,
    )


@asynccontextmanager
async def _connected(orch: TransferOrchestrator, server: ServerConfig) -> AsyncIterator[TransferOrchestrator]:
    await orch.connect_to_server(server)
    try:
        yield orch
    finally:
        orch.disconnect_all()


def _select_server(query: str | None, message: str) -> ServerConfig:
    """Resolve a server by query, or let the user pick one interactively."""
    if query is not None:
        srv = storage.find_server(query)
        if not srv:
            console.print("[red]Server not found[/red]")
            raise typer.Exit(1)
        return srv

    servers = storage.load_servers()
    if not servers:
        console.print("[yellow]No servers found. Add one: sftp-tools add[/yellow]")
        raise typer.Exit(1)
    by_display = {s.display(): s for s in sorted(servers, key=lambda x: x.name.lower())}
    try:
        selected = inquirer.select(
            message=message,
            choices=list(by_display),
            cycle=True,
            vi_mode=False,
            instruction="↑↓ navigate, search by name",
        ).execute()
    except KeyboardInterrupt:
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)
    return by_display[selected]


def _print_servers(servers: list[ServerConfig]) -> None:
    table = Table(title="Servers")
    table.add_column("Name", style="bold")
    table.add_column("Connection")
    table.add_column("Auth", justify="center", no_wrap=True)
    table.add_column("Remote path")
    table.add_column("Workspace", style="dim")

    for s in servers:
        auth = "key" if s.uses_key else "pwd"
        table.add_row(s.name, f"{s.username}@{s.host}:{s.port}", auth, s.remote_path, s.workspace_path or "")

    console.print(table)


def _print_entries(path: str, entries: list[RemoteEntry]) -> None:
    table = Table(title=path)
    table.add_column("Name")
    table.add_column("Type", justify="center")
    for e in entries:
        if e.is_directory:
            table.add_row(f"[bold blue]{e.filename}/[/bold blue]", "dir")
        else:
            table.add_row(e.filename, "file")
    console.print(table)


def _print_fan_out(result: FanOutResult) -> None:
    for name in result.succeeded:
        console.print(f"  [green]✓[/green] {name}")
    for name, error in result.failed.items():
        console.print(f"  [red]✗[/red] {name}: {error}")
    console.print(f"\n[bold]Summary:[/bold] {result.success_count} succeeded, {result.fail_count} failed")
    if not result.ok:
        raise typer.Exit(1)


@app.command("list", help="Show configured servers.")
def list_servers() -> None:
    servers = storage.load_servers()
    if not servers:
        console.print("[yellow]No servers found. Add one: sftp-tools add[/yellow]")
        return
    _print_servers(servers)


@app.command("add", help="Add a new server.")
def add_server(
    name: str = typer.Option(..., prompt=True, help="Server name (unique)"),
    host: str = typer.Option(..., prompt=True),
    port: int = typer.Option(22, prompt=True),
    username: str = typer.Option(..., prompt=True),
    key_path: str | None = typer.Option(None, "--key", help="Private key path (otherwise a password is asked)"),
    remote_path: str = typer.Option("/", prompt=True, help="Remote root directory"),
    workspace: str | None = typer.Option(None, help="Local workspace directory for this server"),
):
    if any(s.name == name for s in storage.load_servers()):
        console.print(f"[red]A server named '{name}' already exists[/red]")
        raise typer.Exit(1)
    try:
        data: dict = {
            "name": name,
            "host": host,
            "port": port,
            "username": username,
            "remote_path": remote_path,
            "workspace_path": str(Path(workspace).resolve()) if workspace else None,
        }
        if key_path:
            data["key_path"] = str(Path(key_path).expanduser())
            passphrase = typer.prompt("Key passphrase (empty for none)", default="", hide_input=True, show_default=False)
            data["passphrase"] = passphrase or None
        else:
            data["password"] = typer.prompt("Password", hide_input=True, confirmation_prompt=True)
        server = ServerConfig.model_validate(data)
        storage.upsert_server(server)
        console.print(f"[green]Added:[/green] {server.display()}")
    except (KeyboardInterrupt, typer.Abort):
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)


@app.command("remove", help="Remove a server. Alias: rm")
@app.command("rm", hidden=True)
def remove(query: str | None = typer.Argument(None, help="Name/partial name (optional)")):
    srv = _select_server(query, "Select server to remove:")
    try:
        if not typer.confirm(f"Remove '{srv.name}' ({srv.username}@{srv.host}:{srv.port})?"):
            raise typer.Exit(1)
        if storage.remove_server(srv.name):
            console.print("[green]Removed.[/green]")
        else:
            console.print("[yellow]Nothing to remove.[/yellow]")
    except (KeyboardInterrupt, typer.Abort):
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)


@app.command("settings", help="Show or change backup and confirmation settings.")
def settings_cmd(
    backup_path: str | None = typer.Option(None, help="Remote backup base path (empty string disables backups)"),
    backup_folder: str | None = typer.Option(None, help="Backup folder name under the base path"),
    confirm: bool | None = typer.Option(None, "--confirm/--no-confirm", help="Confirm before deleting"),
    timeout: float | None = typer.Option(None, help="Connect timeout in seconds"),
):
    settings = storage.load_settings()
    changes = {
        "backup_base_path": backup_path,
        "backup_folder_name": backup_folder,
        "show_confirm_dialog": confirm,
        "connect_timeout": timeout,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if changes:
        settings = settings.model_copy(update=changes)
        storage.save_settings(settings)
        console.print("[green]Saved.[/green]")

    backup = f"[cyan]{settings.backup_base_path}/{settings.backup_folder_name}[/cyan]" if settings.backup_enabled else "[yellow]disabled[/yellow]"
    console.print(
        Panel(
            f"Backups: {backup}\n"
            f"Confirm before delete: {'yes' if settings.show_confirm_dialog else 'no'}\n"
            f"Connect timeout: {settings.connect_timeout:g}s\n"
            f"Password encryption: {'enabled' if settings.encryption_enabled else 'disabled'}",
            title="Settings",
        )
    )


@app.command("ls", help="List a remote directory.")
def ls_cmd(
    query: str | None = typer.Argument(None, help="Server name/partial name (optional)"),
    path: str | None = typer.Argument(None, help="Remote path (default: server root)"),
):
    srv = _select_server(query, "Select server:")

    async def run():
        orch = _orchestrator()
        async with _connected(orch, srv):
            return await orch.list_directory(path)

    _print_entries(path or srv.remote_path, _run(run()))


@app.command("upload", help="Upload a file to one server or to all of them.")
def upload_cmd(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Local file inside the workspace"),
    server: str | None = typer.Option(None, "--server", "-s", help="Server name/partial name"),
    all_servers: bool = typer.Option(False, "--all", help="Upload to every configured server"),
):
    orch = _orchestrator()
    if all_servers:
        _print_fan_out(_run(orch.upload_to_all_servers(file)))
        return
    srv = _select_server(server, "Select server to upload to:")
    remote = _run(orch.upload_local_artifact(file, srv))
    console.print(f"[green]Uploaded to[/green] {srv.name}:{remote}")


@app.command("upload-dir", help="Upload a directory to one server or to all of them.")
def upload_dir_cmd(
    directory: Path = typer.Argument(..., exists=True, file_okay=False, help="Local directory inside the workspace"),
    server: str | None = typer.Option(None, "--server", "-s", help="Server name/partial name"),
    all_servers: bool = typer.Option(False, "--all", help="Upload to every configured server"),
):
    orch = _orchestrator()
    if all_servers:
        _print_fan_out(_run(orch.upload_directory_to_all_servers(directory)))
        return
    srv = _select_server(server, "Select server to upload to:")
    remote = _run(orch.upload_directory(directory, srv))
    console.print(f"[green]Uploaded to[/green] {srv.name}:{remote}")


@app.command("download", help="Download a remote file into the workspace.")
def download_cmd(
    query: str = typer.Argument(..., help="Server name/partial name"),
    remote_path: str = typer.Argument(..., help="Remote file path"),
):
    srv = _select_server(query, "Select server:")

    async def run():
        orch = _orchestrator()
        async with _connected(orch, srv):
            return await orch.download_remote_file(remote_path)

    local = _run(run())
    if local is None:
        console.print("[dim]Cancelled.[/dim]")
    else:
        console.print(f"[green]Saved[/green] {local}")


def _confirm_delete(orch: TransferOrchestrator, remote_path: str) -> bool:
    if orch.is_backup_path(remote_path):
        console.print(f"[bold red]{remote_path} is inside the backup folder and will not be backed up again.[/bold red]")
        return typer.prompt("Type the full path to delete it", default="", show_default=False) == remote_path
    if orch.settings.show_confirm_dialog:
        return typer.confirm(f"Delete {remote_path}?", default=False)
    return True


@app.command("delete", help="Delete a remote file or directory (backed up first when enabled).")
def delete_cmd(
    query: str = typer.Argument(..., help="Server name/partial name"),
    remote_path: str = typer.Argument(..., help="Remote path"),
    directory: bool = typer.Option(False, "--dir", "-r", help="Delete a directory recursively"),
):
    srv = _select_server(query, "Select server:")
    orch = _orchestrator()
    try:
        if not _confirm_delete(orch, remote_path):
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)
    except (KeyboardInterrupt, typer.Abort):
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)

    async def run():
        async with _connected(orch, srv):
            await orch.delete_remote_path(remote_path, directory)

    _run(run())
    console.print(f"[green]Deleted[/green] {srv.name}:{remote_path}")


async def _edit(orch: TransferOrchestrator, srv: ServerConfig, remote_path: str) -> bool:
    handle = await orch.open_remote_file(remote_path)
    try:
        before = handle.local_path.read_bytes()
        typer.edit(filename=str(handle.local_path))
        if handle.local_path.read_bytes() == before:
            console.print("[dim]No changes.[/dim]")
            return False
        await orch.upload_local_artifact(handle.local_path, srv)
        return True
    finally:
        orch.close_local_artifact(handle.local_path)


@app.command("edit", help="Open a remote file in $EDITOR and upload it back on save.")
def edit_cmd(
    query: str = typer.Argument(..., help="Server name/partial name"),
    remote_path: str = typer.Argument(..., help="Remote file path"),
):
    srv = _select_server(query, "Select server:")

    async def run():
        orch = _orchestrator()
        async with _connected(orch, srv):
            return await _edit(orch, srv, remote_path)

    if _run(run()):
        console.print(f"[green]Saved[/green] {srv.name}:{remote_path}")


async def _browse(orch: TransferOrchestrator, srv: ServerConfig, start: str) -> None:
    cwd = start
    while True:
        entries = await orch.list_directory(cwd)
        choices = ([".."] if cwd != "/" else []) + [f"{e.filename}/" if e.is_directory else e.filename for e in entries]
        by_label = {(f"{e.filename}/" if e.is_directory else e.filename): e for e in entries}
        selected = await inquirer.fuzzy(
            message=f"{srv.name}:{cwd}",
            choices=[*choices, "[quit]"],
            instruction="enter: open, type to filter",
        ).execute_async()
        if selected == "[quit]":
            return
        if selected == "..":
            cwd = remote_parent(cwd)
            continue
        entry = by_label[selected]
        if entry.is_directory:
            cwd = entry.path
            continue

        action = await inquirer.select(
            message=entry.path,
            choices=["download", "edit", "delete", "back"],
        ).execute_async()
        if action == "download":
            await orch.download_remote_file(entry.path)
        elif action == "edit":
            await _edit(orch, srv, entry.path)
        elif action == "delete" and _confirm_delete(orch, entry.path):
            await orch.delete_remote_path(entry.path, is_directory=False)


@app.command("browse", help="Navigate a server interactively.")
def browse_cmd(
    query: str | None = typer.Argument(None, help="Server name/partial name (optional)"),
    path: str | None = typer.Argument(None, help="Start directory"),
):
    srv = _select_server(query, "Select server to browse:")

    async def run():
        orch = _orchestrator()
        async with _connected(orch, srv):
            await _browse(orch, srv, join_remote(path or srv.remote_path))

    _run(run())


@app.command("encrypt", help="Encrypt stored passwords with a key derived from your SSH key.")
def enable_encryption():
    settings = storage.load_settings()
    if settings.encryption_enabled:
        console.print("[yellow]Encryption is already enabled.[/yellow]")
        return

    ssh_key = find_ssh_key_for_encryption()
    if not ssh_key:
        console.print("[red]Error: SSH key not found (id_ed25519 or id_rsa) in ~/.ssh/[/red]")
        raise typer.Exit(1)

    console.print(
        Panel(
            f"Passwords and key passphrases will be encrypted with a key derived from [cyan]{ssh_key}[/cyan].\n"
            "[bold red]If that key is deleted or changed, stored secrets cannot be recovered.[/bold red]",
            title="Password Encryption",
            border_style="yellow",
        )
    )
    try:
        if not typer.confirm("Continue?", default=False):
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)
    except (KeyboardInterrupt, typer.Abort):
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)

    servers = storage.load_servers()
    storage.save_settings(settings.model_copy(update={"encryption_enabled": True, "encryption_key_source": str(ssh_key)}))
    storage.save_servers(servers)
    console.print(f"[bold green]✓ Encryption enabled[/bold green] ({len(servers)} server(s) rewritten)")


@app.command("decrypt", help="Store passwords in plaintext again.")
def disable_encryption():
    settings = storage.load_settings()
    if not settings.encryption_enabled:
        console.print("[yellow]Encryption is already disabled.[/yellow]")
        return
    try:
        if not typer.confirm("Store all passwords in plaintext?", default=False):
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)
    except (KeyboardInterrupt, typer.Abort):
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)

    servers = storage.load_servers()
    storage.save_settings(settings.model_copy(update={"encryption_enabled": False}))
    storage.save_servers(servers)
    console.print("[bold yellow]Encryption disabled.[/bold yellow] Passwords are now stored in plaintext.")


def main():
    app()


if __name__ == "__main__":
    main()
