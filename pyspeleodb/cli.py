"""CLI interface for SpeleoDB."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

import click
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from . import __version__
from .api import SpeleoDBClient
from .auth import login
from .config import config
from .exceptions import SpeleoDBError, SpeleoDBLockConflictError
from .models import Project, ProjectCreationRequest, sort_projects
from .output import OutputFormatter
from .transfer import ProgressCallback
from .utils import calculate_file_checksum, is_valid_oauth_token

logger = logging.getLogger(__name__)


@contextmanager
def transfer_progress(
    out: OutputFormatter, description: str, enabled: bool = True
) -> Iterator[Optional[ProgressCallback]]:
    """Yield a progress callback backed by a rich progress bar.

    Yields None when progress output is disabled, quiet or in JSON mode.
    """
    if not enabled or out.quiet or out.json_output:
        yield None
        return

    progress = Progress(
        "[progress.description]{task.description}",
        BarColumn(),
        "[progress.percentage]{task.percentage:>3.0f}%",
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        refresh_per_second=10,
    )
    with progress:
        task_id = progress.add_task(description, total=None)

        def callback(done: int, total: int) -> None:
            progress.update(task_id, completed=done, total=total or None)

        yield callback


def project_row(project: Project) -> dict[str, Any]:
    mutex = project.active_mutex
    return {
        "id": project.id,
        "name": project.name,
        "country": project.country_code,
        "permission": project.permission.value,
        "locked_by": mutex.user if mutex else None,
        "modified": (
            project.modified_date.strftime("%Y-%m-%d %H:%M")
            if project.modified_date
            else None
        ),
    }


@click.group()
@click.option(
    "--instance",
    "-i",
    envvar="SPELEODB_INSTANCE",
    help="SpeleoDB instance host (default: www.speleoDB.org)",
)
@click.option("--email", "-e", envvar="SPELEODB_EMAIL", help="Account email")
@click.option("--password", envvar="SPELEODB_PASSWORD", help="Account password")
@click.option("--oauth-token", envvar="SPELEODB_OAUTH_TOKEN", help="Personal API token")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: Any,
    instance: Optional[str],
    email: Optional[str],
    password: Optional[str],
    oauth_token: Optional[str],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """speleodb - Synchronize Ariane cave survey projects with SpeleoDB."""
    ctx.ensure_object(dict)
    ctx.obj["instance"] = instance
    ctx.obj["email"] = email
    ctx.obj["password"] = password
    ctx.obj["oauth_token"] = oauth_token
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pyspeleodb").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.option("--oauth-token", "-t", help="Personal API token (40 hex characters)")
@click.option("--email", "-e", help="Account email (instead of a token)")
@click.option("--password", "-p", help="Account password (with --email)")
@click.pass_context
def init(
    ctx: Any,
    oauth_token: Optional[str],
    email: Optional[str],
    password: Optional[str],
) -> None:
    """Validate credentials and store them.

    Credentials are saved to ~/.config/pyspeleodb/config. Without options,
    you are prompted for an OAuth token.
    """
    out: OutputFormatter = ctx.obj["out"]

    if email and not password:
        password = click.prompt("Password", hide_input=True)
    if not email and not oauth_token:
        oauth_token = click.prompt("Enter your SpeleoDB OAuth token", hide_input=True)

    if oauth_token and not is_valid_oauth_token(oauth_token):
        out.error("Invalid token format: expected 40 lowercase hexadecimal characters")
        ctx.exit(1)

    instance = ctx.obj.get("instance") or config.instance
    out.info(f"Validating credentials against {instance}...")

    with SpeleoDBClient(instance=instance) as client:
        try:
            if oauth_token:
                client.authenticate(oauth_token=oauth_token)
            else:
                client.authenticate(email=email, password=password)
            out.success("✓ Credentials are valid")
        except SpeleoDBError as e:
            out.error(f"Credential validation failed: {e}")
            if not click.confirm("Save credentials anyway?", default=False):
                out.warning("Configuration cancelled.")
                ctx.exit(1)

    try:
        if oauth_token:
            config.save_credentials(instance=instance, oauth_token=oauth_token)
        else:
            config.save_credentials(instance=instance, email=email, password=password)
    except (SpeleoDBError, OSError) as e:
        out.error(f"Could not save configuration: {e}")
        ctx.exit(1)

    out.print_summary(
        "Initialization Complete",
        [
            ("Status", "✓ Configuration saved successfully"),
            ("Instance", instance),
            ("Config file", str(config.get_config_path())),
        ],
    )


@main.command()
@click.pass_context
def logout(ctx: Any) -> None:
    """Remove stored credentials."""
    out: OutputFormatter = ctx.obj["out"]
    config.clear_credentials()
    out.success("✓ Stored credentials removed")


@main.command()
@click.pass_context
def status(ctx: Any) -> None:
    """Show the configuration and check that login works."""
    out: OutputFormatter = ctx.obj["out"]

    instance = ctx.obj.get("instance") or config.instance
    items = [
        ("Instance", instance),
        ("Project directory", str(config.project_dir)),
        ("Config file", str(config.get_config_path())),
    ]

    has_credentials = bool(
        ctx.obj.get("oauth_token")
        or (ctx.obj.get("email") and ctx.obj.get("password"))
        or config.is_configured()
    )
    if not has_credentials:
        items.append(("Authentication", "not configured"))
        out.print_summary("SpeleoDB Status", items)
        return

    with login(ctx, out) as client:
        items.append(("Authentication", f"✓ logged in to {client.current_instance()}"))
    out.print_summary("SpeleoDB Status", items)


@main.command()
@click.pass_context
def projects(ctx: Any) -> None:
    """List your projects."""
    out: OutputFormatter = ctx.obj["out"]

    with login(ctx, out) as client:
        try:
            result = sort_projects(client.list_projects())
        except SpeleoDBError as e:
            out.error(str(e))
            ctx.exit(1)

    if not result and not out.json_output:
        out.info("No projects found.")
        return

    out.output_table(
        [project_row(p) for p in result],
        ["id", "name", "country", "permission", "locked_by", "modified"],
        {
            "id": "ID",
            "name": "Name",
            "country": "Country",
            "permission": "Permission",
            "locked_by": "Locked by",
            "modified": "Modified",
        },
    )


@main.command()
@click.argument("name")
@click.option("--description", "-d", required=True, help="Project description")
@click.option("--country", "-c", required=True, help="ISO country code (e.g. US)")
@click.option("--latitude", help="Latitude of the cave entrance")
@click.option("--longitude", help="Longitude of the cave entrance")
@click.pass_context
def create(
    ctx: Any,
    name: str,
    description: str,
    country: str,
    latitude: Optional[str],
    longitude: Optional[str],
) -> None:
    """Create a project.

    NAME: Project name
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        request = ProjectCreationRequest(
            name=name,
            description=description,
            country_code=country,
            latitude=latitude,
            longitude=longitude,
        )
    except ValueError as e:
        out.error(str(e))
        ctx.exit(1)

    with login(ctx, out) as client:
        try:
            project = client.create_project(request)
        except SpeleoDBError as e:
            out.error(str(e))
            ctx.exit(1)

    if out.json_output:
        out.output_json(project_row(project))
        return
    out.success(f"✓ Created project {project.name} ({project.id})")


@main.command()
@click.argument("project_id")
@click.pass_context
def lock(ctx: Any, project_id: str) -> None:
    """Acquire (or refresh) the lock on a project.

    PROJECT_ID: Project ID
    """
    out: OutputFormatter = ctx.obj["out"]

    with login(ctx, out) as client:
        try:
            held = client.acquire_or_refresh_lock(project_id)
        except SpeleoDBError as e:
            out.error(str(e))
            ctx.exit(1)

    if not held:
        out.error(f"Project {project_id} is locked by another user")
        ctx.exit(1)
    out.success(f"✓ Project {project_id} locked")


@main.command()
@click.argument("project_id")
@click.pass_context
def unlock(ctx: Any, project_id: str) -> None:
    """Release your lock on a project.

    PROJECT_ID: Project ID
    """
    out: OutputFormatter = ctx.obj["out"]

    with login(ctx, out) as client:
        try:
            # Local lock state starts empty in a new process
            if not client.acquire_or_refresh_lock(project_id):
                out.error(f"Project {project_id} is locked by another user")
                ctx.exit(1)
            released = client.release_lock(project_id)
        except SpeleoDBError as e:
            out.error(str(e))
            ctx.exit(1)

    if not released:
        out.error(f"Server refused to release project {project_id}")
        ctx.exit(1)
    out.success(f"✓ Project {project_id} unlocked")


@main.command()
@click.argument("project_id")
@click.option("--message", "-m", required=True, help="Upload message")
@click.option(
    "--file",
    "-f",
    "archive",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Archive to upload (default: <project dir>/<PROJECT_ID>.tml)",
)
@click.option("--keep-lock", is_flag=True, help="Keep the project locked afterwards")
@click.option(
    "--verify", is_flag=True, help="Download the project again and compare checksums"
)
@click.option("--no-progress", is_flag=True, help="Disable progress bars")
@click.pass_context
def upload(
    ctx: Any,
    project_id: str,
    message: str,
    archive: Optional[Path],
    keep_lock: bool,
    verify: bool,
    no_progress: bool,
) -> None:
    """Upload a project archive.

    The project is locked for the upload and unlocked afterwards unless
    --keep-lock is given.

    PROJECT_ID: Project ID
    """
    out: OutputFormatter = ctx.obj["out"]

    with login(ctx, out) as client:
        try:
            if not client.acquire_or_refresh_lock(project_id):
                raise SpeleoDBLockConflictError(
                    f"Project {project_id} is locked by another user"
                )
            try:
                with transfer_progress(
                    out, f"Uploading {project_id}", not no_progress
                ) as callback:
                    result = client.upload_project(
                        message, project_id, archive=archive, progress_callback=callback
                    )
            finally:
                if not keep_lock:
                    client.release_lock(project_id)

            if verify:
                out.info("Verifying upload...")
                path = client.download_project(project_id)
                client.verify_download(path, result.checksum)
                out.success("✓ Server copy matches the uploaded archive")
        except (SpeleoDBError, ValueError) as e:
            out.error(str(e))
            ctx.exit(1)

    out.print_summary(
        "Upload Complete",
        [
            ("Project", result.project_id),
            ("Size", out.format_size(result.size)),
            ("SHA-256", result.checksum),
            ("Lock", "kept" if keep_lock else "released"),
        ],
    )


@main.command()
@click.argument("project_id")
@click.option("--no-progress", is_flag=True, help="Disable progress bars")
@click.pass_context
def download(ctx: Any, project_id: str, no_progress: bool) -> None:
    """Download a project archive into the project directory.

    PROJECT_ID: Project ID
    """
    out: OutputFormatter = ctx.obj["out"]

    with login(ctx, out) as client:
        try:
            with transfer_progress(
                out, f"Downloading {project_id}", not no_progress
            ) as callback:
                path = client.download_project(project_id, progress_callback=callback)
        except SpeleoDBError as e:
            out.error(str(e))
            ctx.exit(1)

    out.print_summary(
        "Download Complete",
        [
            ("Project", project_id),
            ("Path", str(path)),
            ("Size", out.format_size(path.stat().st_size)),
            ("SHA-256", calculate_file_checksum(path)),
        ],
    )


@main.command()
@click.option(
    "--software-version", help="Only show announcements for this Ariane version"
)
@click.pass_context
def announcements(ctx: Any, software_version: Optional[str]) -> None:
    """Show current announcements (no login needed)."""
    out: OutputFormatter = ctx.obj["out"]

    with SpeleoDBClient(
        instance=ctx.obj.get("instance"), software_version=software_version
    ) as client:
        try:
            result = client.fetch_announcements()
        except SpeleoDBError as e:
            out.error(str(e))
            ctx.exit(1)

    if out.json_output:
        out.output_json(
            [
                {
                    "title": a.title,
                    "header": a.header,
                    "message": a.message,
                    "expires": a.expires_at.isoformat() if a.expires_at else None,
                }
                for a in result
            ]
        )
        return

    if not result:
        out.info("No announcements.")
        return
    for announcement in result:
        out.print(f"[bold]{announcement.title}[/bold]")
        if announcement.header:
            out.print(announcement.header)
        out.print(announcement.message)
        out.print("")


if __name__ == "__main__":
    main()
