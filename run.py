"""Entry-point for the Academy Console."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
import webbrowser
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from academy.bootstrap import initialize_app
from academy.config import AppConfig
from academy.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from academy.services.admin import USER_STATUSES, UserDirectory
from academy.services.account import AccountService
from academy.services.api import AcademyClient, AcademyError, AccountSuspended
from academy.services.catalog import CatalogService, CourseFilter, PRICE_RANGES
from academy.services.certificates import CertificateService
from academy.services.progress import ProgressTracker
from academy.services.storage import PersistentStore
from academy.ui.console import ConsoleUI
from academy.web import create_app
from academy.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("academy_console.cli")


cli = typer.Typer(add_completion=False, help="Academy Console management commands")


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.WARNING)
    configure_logging(handlers=[file_handler, stream_handler])


def _open_client() -> tuple[AppConfig, AcademyClient]:
    config = initialize_app()
    _prepare_logging(config.storage_root)
    store = PersistentStore(config)
    return config, AcademyClient.from_config(config, store)


def _run_with_client(client: AcademyClient, operation) -> object:
    async def _runner():
        async with client:
            return await operation

    try:
        return asyncio.run(_runner())
    except AccountSuspended as error:
        ConsoleUI().notify(f"Account suspended: {error}", style="bold red")
        raise typer.Exit(code=2) from error
    except AcademyError as error:
        ConsoleUI().notify(str(error), style="bold red")
        raise typer.Exit(code=1) from error


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None, open_browser=True)


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="ACADEMY_ROOT_PATH",
    ),
    open_browser: bool = typer.Option(True, "--open-browser/--no-browser", help="Open the console in a browser"),
) -> None:
    """Run the FastAPI-powered console."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    store = PersistentStore(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(store, config=app_config, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.warning(
                "Ignoring max upload size limit; uvicorn.Config does not support "
                "'limit_max_request_size'.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server

    if open_browser:
        browser_host = host
        if not browser_host or browser_host in {"0.0.0.0", "::"}:
            browser_host = "127.0.0.1"
        url = f"http://{browser_host}:{port}{normalized_root}/docs"

        def _open_browser_later() -> None:
            time.sleep(1.0)
            try:
                webbrowser.open(url, new=2, autoraise=True)
            except webbrowser.Error as error:
                LOGGER.debug("Could not open browser: %s", error)

        threading.Thread(target=_open_browser_later, daemon=True).start()

    server.run()


@cli.command()
def courses(
    search: str = typer.Option("", help="Match title, description or tags"),
    category: str = typer.Option("", help="Only show this category"),
    level: str = typer.Option("", help="Only show this level"),
    tag: str = typer.Option("", help="Only show courses carrying this tag"),
    price_range: str = typer.Option(
        "", help=f"One of: {', '.join(sorted(PRICE_RANGES))}"
    ),
    page: int = typer.Option(1, min=1, help="Page to display"),
    limit: int = typer.Option(12, min=1, max=100, help="Courses per page"),
) -> None:
    """List published courses with the catalog filters applied."""

    try:
        criteria = CourseFilter(
            search=search.strip(), category=category, level=level, tag=tag, price_range=price_range
        )
    except ValueError as error:
        raise typer.BadParameter(str(error), param_hint="--price-range") from error

    _, client = _open_client()
    result = _run_with_client(client, CatalogService(client).browse(criteria, page=page, limit=limit))
    ConsoleUI().show_catalog(result)


@cli.command("verify-certificate")
def verify_certificate(
    certificate_id: str = typer.Argument(..., help="Certificate ID such as CERT-ABCDE-12345"),
) -> None:
    """Check a certificate against the public verification endpoint."""

    _, client = _open_client()
    result = _run_with_client(client, CertificateService(client).verify(certificate_id))
    ConsoleUI().show_verification(result)
    if not result.found:
        raise typer.Exit(code=1)


@cli.command()
def certificate(
    course_id: str = typer.Argument(..., help="Course identifier"),
    generate: bool = typer.Option(False, "--generate", help="Issue the certificate if none exists yet"),
) -> None:
    """Show the certificate issued for a completed course."""

    _, client = _open_client()
    service = CertificateService(client)

    async def _lookup():
        record = await service.for_course(course_id)
        if record is None and generate:
            record = await service.generate(course_id)
        return record

    ConsoleUI().show_certificate(_run_with_client(client, _lookup()), course_id=course_id)


@cli.command("download-certificate")
def download_certificate(
    certificate_id: str = typer.Argument(..., help="Certificate ID such as CERT-ABCDE-12345"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Where to write the PDF"),
) -> None:
    """Save a certificate PDF to disk."""

    _, client = _open_client()
    pdf = _run_with_client(client, CertificateService(client).download(certificate_id))
    target = output or Path.cwd() / pdf.filename
    target.write_bytes(pdf.content)
    ConsoleUI().notify(f"Saved {target}", style="green")


@cli.command("account-status")
def account_status() -> None:
    """Check whether the signed-in learner account is still active."""

    _, client = _open_client()
    ConsoleUI().show_account(_run_with_client(client, AccountService(client).check()))


@cli.command()
def users(
    page: int = typer.Option(1, min=1, help="Page to display"),
    search: str = typer.Option("", help="Filter by name or email"),
    status: str = typer.Option("all", help="all, active or inactive"),
    sort_by: str = typer.Option("createdAt", help="Sort field"),
    sort_order: str = typer.Option("desc", help="asc or desc"),
) -> None:
    """List learner accounts (requires an admin token)."""

    _, client = _open_client()
    directory = UserDirectory(client)
    try:
        result = _run_with_client(
            client,
            directory.load(
                page=page, search=search, status=status, sort_by=sort_by, sort_order=sort_order
            ),
        )
    except ValueError as error:
        raise typer.BadParameter(str(error)) from error
    ConsoleUI().show_users(result.users, result.pagination)


@cli.command("set-user-status")
def set_user_status(
    user_id: str = typer.Argument(..., help="Account identifier"),
    status: str = typer.Argument(..., help="active or inactive"),
) -> None:
    """Activate or deactivate a learner account."""

    if status not in USER_STATUSES:
        raise typer.BadParameter(f"Status must be one of: {', '.join(USER_STATUSES)}", param_hint="STATUS")
    _, client = _open_client()
    user = _run_with_client(client, UserDirectory(client).set_status(user_id, status))
    ConsoleUI().notify(f"Account {user.id} is now {user.status}", style="green")


@cli.command()
def login(
    role: str = typer.Option("learner", help="learner or admin"),
    email: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
) -> None:
    """Sign in and keep the bearer token for later commands."""

    if role not in ("learner", "admin"):
        raise typer.BadParameter("Role must be learner or admin", param_hint="--role")
    _, client = _open_client()
    _run_with_client(client, client.login(role, email, password))
    ConsoleUI().notify(f"Signed in as {role}", style="green")


@cli.command()
def logout(role: str = typer.Option("learner", help="learner or admin")) -> None:
    """Forget the stored token for *role*."""

    if role not in ("learner", "admin"):
        raise typer.BadParameter("Role must be learner or admin", param_hint="--role")
    _, client = _open_client()
    removed = client.logout(role)
    ConsoleUI().notify(
        f"Removed {role} token" if removed else f"No {role} token was stored",
        style="green" if removed else "yellow",
    )


@cli.command()
def progress(course_id: str = typer.Argument(..., help="Course identifier")) -> None:
    """Show per-video watch progress for a purchased course."""

    config, client = _open_client()
    tracker = ProgressTracker(client, interval=config.progress_interval)
    result = _run_with_client(client, tracker.course_progress(course_id))
    ConsoleUI().show_progress(result)


if __name__ == "__main__":
    cli()
