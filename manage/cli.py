"""
Command-line interface for managing media libraries and the sharing server.
"""

from pathlib import Path
import functools

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, BarColumn, TextColumn
from rich.table import Table

from common.config import AppConfig
from common.constants import APP_VERSION, ERROR_LOG_FILENAME
from common.crypto import TokenAuth
from common.errors import LibraryError, MigrationError, ServerStateError
from common.logs import setup_logging
from common.models import Permission
from library.migration import needs_migration, migrate_legacy_database
from library.provider import FFmpegMediaProvider
from library.registry import LibraryRegistry
from library.storage import LocalLibraryStorage
from library.store import LibraryStore
from sharing.server import SharingServer
from sharing.settings import ServerConfig
from sharing.users import SharedUserStore

console = Console()


def _store_factory(config: AppConfig):
    provider = FFmpegMediaProvider(thumbnail_width=config.thumbnail_width)
    return functools.partial(
        LibraryStore,
        provider=provider,
        move_timeout_sec=config.move_timeout_sec,
        extract_color=config.extract_dominant_color,
    )


def _registry(config: AppConfig) -> LibraryRegistry:
    return LibraryRegistry(str(config.config_path), store_factory=_store_factory(config))


def _library_path(config: AppConfig, library) -> str:
    path = library or config.default_library
    if not path:
        raise click.UsageError("No library given and no default library configured")
    return path


@click.group()
@click.version_option(version=APP_VERSION)
@click.option('--config-dir', type=click.Path(file_okay=False), help='Configuration directory')
@click.option('--log-level', help='Logging level (DEBUG, INFO, WARNING, ...)')
@click.pass_context
def cli(ctx, config_dir, log_level):
    """
    Media library manager

    Import media into libraries, find duplicates and share a library
    with remote users.
    """
    config = AppConfig.load(config_dir)
    if log_level:
        config.log_level = log_level
    log_file = config.log_file or config.config_path / ERROR_LOG_FILENAME
    setup_logging(config.log_level, log_file)
    ctx.obj = config


@cli.command()
@click.argument('library', required=False, type=click.Path(file_okay=False))
@click.option('--port', type=int, help='Port to listen on')
@click.option('--host', help='Interface to bind')
@click.pass_obj
def serve(config, library, port, host):
    """Share a library over HTTP until interrupted."""
    server_config = ServerConfig.load(str(config.config_path))
    if host:
        server_config.host = host
    server_config.port = port or server_config.port or config.server_port
    library = library or server_config.publish_library_path or config.default_library

    server = SharingServer(str(config.config_path), server_config, registry=_registry(config))
    console.print(Panel.fit(
        f"[bold cyan]Sharing library[/bold cyan]\n\n"
        f"Library: [cyan]{library}[/cyan]\n"
        f"Address: [cyan]{server_config.host}:{server_config.port}[/cyan]",
        border_style="cyan"
    ))
    try:
        server.serve_forever(library)
    except (LibraryError, ServerStateError, OSError) as e:
        console.print(f"[red]❌ Server failed: {e}[/red]")
        raise SystemExit(1)


@cli.command(name='import')
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--library', '-l', type=click.Path(file_okay=False), help='Target library')
@click.option('--check-duplicates/--no-check-duplicates', default=True,
              help='Skip files already in the library (same name and size)')
@click.pass_obj
def import_files(config, files, library, check_duplicates):
    """Move media FILES into a library."""
    store = _registry(config).get_store(_library_path(config, library))

    with Progress(TextColumn("{task.description}"), BarColumn(),
                  TextColumn("{task.percentage:>3.0f}%"), console=console) as progress:
        task = progress.add_task("Importing", total=100)

        def on_progress(p):
            progress.update(task, completed=p.percentage,
                            description=f"({p.current}/{p.total}) {p.step}: {escape(p.file_name)}")

        imported = store.import_media_files(list(files), on_progress=on_progress,
                                            check_duplicates=check_duplicates)
    store.close()

    console.print(f"\n[green]✓[/green] Imported [bold]{len(imported)}[/bold] of {len(files)} file(s)")
    for media in imported:
        console.print(f"  [cyan]#{media.id}[/cyan] {media.file_name}")


@cli.command()
@click.option('--library', '-l', type=click.Path(file_okay=False), help='Library to scan')
@click.option('--by', 'criteria', multiple=True, default=('name', 'size'),
              type=click.Choice(['name', 'size', 'duration', 'modified']),
              help='Fields that must match (repeatable)')
@click.pass_obj
def duplicates(config, library, criteria):
    """List groups of duplicate media in a library."""
    store = _registry(config).get_store(_library_path(config, library))
    flags = {key: key in criteria for key in ('name', 'size', 'duration', 'modified')}
    groups = store.find_library_duplicates(flags)
    store.close()

    if not groups:
        console.print("[green]No duplicates found[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Group", style="dim", width=6)
    table.add_column("ID")
    table.add_column("File")
    table.add_column("Size", justify="right")
    for index, group in enumerate(groups, 1):
        for media in group:
            table.add_row(str(index), str(media.id), media.file_name, f"{media.file_size:,}")
    console.print(table)
    console.print(f"\n[yellow]{len(groups)} duplicate group(s)[/yellow]")


@cli.command()
@click.argument('library', type=click.Path(exists=True, file_okay=False))
def migrate(library):
    """Convert a legacy single-file library to the per-media layout."""
    storage = LocalLibraryStorage(library)
    if not needs_migration(storage):
        console.print("[yellow]Nothing to migrate[/yellow]")
        return
    try:
        report = migrate_legacy_database(storage)
    except MigrationError as e:
        console.print(f"[red]❌ Migration failed: {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓[/green] Migrated {report.media_count} media, {report.tag_count} tags, "
                  f"{report.folder_count} folders")


@cli.group()
def users():
    """Manage remote users of the sharing server."""


def _user_store(config: AppConfig) -> SharedUserStore:
    config_dir = str(config.config_path)
    return SharedUserStore(config_dir, ServerConfig.load(config_dir))


@users.command(name='add')
@click.argument('user_token')
@click.option('--nickname', '-n', default='Guest', help='Display name')
@click.option('--permission', '-p', 'permissions', multiple=True,
              type=click.Choice([p.value for p in Permission]), default=(Permission.READ_ONLY.value,),
              help='Granted permission (repeatable)')
@click.pass_obj
def users_add(config, user_token, nickname, permissions):
    """Grant access to the holder of USER_TOKEN and print their access token."""
    try:
        user = _user_store(config).issue_access(user_token, nickname, list(permissions))
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓[/green] Added [bold]{user.nickname}[/bold] ({user.id})")
    console.print("\n[bold green]Send this access token to the user:[/bold green]\n")
    console.print(f"[cyan]{user.access_token}[/cyan]", soft_wrap=True)


@users.command(name='list')
@click.pass_obj
def users_list(config):
    """Show registered users."""
    shared = _user_store(config).list_users()
    if not shared:
        console.print("[yellow]No shared users[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Nickname")
    table.add_column("Permissions")
    table.add_column("Active")
    table.add_column("Last access")
    for user in shared:
        table.add_row(user.id, user.nickname, ", ".join(user.permissions),
                      "yes" if user.is_active else "no", user.last_access_at or "-")
    console.print(table)


@users.command(name='revoke')
@click.argument('user_id')
@click.pass_obj
def users_revoke(config, user_id):
    """Remove a user; their tokens stop working immediately."""
    if _user_store(config).revoke_user(user_id):
        console.print(f"[green]✓[/green] Revoked {user_id}")
    else:
        console.print(f"[red]No user with id {user_id}[/red]")
        raise SystemExit(1)


@cli.command()
def token():
    """Generate a user token identifying this machine."""
    user_token = TokenAuth.generate_user_token(TokenAuth.get_hardware_id())
    console.print("\n[bold green]Give this token to the library host:[/bold green]\n")
    console.print(f"[cyan]{user_token}[/cyan]", soft_wrap=True)


@cli.command()
@click.argument('name')
@click.argument('parent_dir', type=click.Path(exists=True, file_okay=False))
@click.pass_obj
def create(config, name, parent_dir):
    """Create an empty library NAME.library under PARENT_DIR."""
    try:
        info = _registry(config).create_library(name, str(Path(parent_dir)))
    except FileExistsError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓[/green] Created library at [cyan]{info.path}[/cyan]")
