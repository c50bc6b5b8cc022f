"""A Rich-powered console front-end for the academy CLI commands."""

from __future__ import annotations

from typing import Optional, Sequence

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..services.account import AccountStatus
from ..services.catalog import CatalogPage
from ..services.certificates import VerificationResult
from ..services.models import CertificateRecord, Pagination, UserAccount
from ..services.progress import CourseProgress


STATUS_STYLES = {
    "active": "green",
    "inactive": "red",
    "published": "green",
    "draft": "yellow",
}


def _format_price(price: float) -> str:
    return "Free" if price <= 0 else f"${price:,.2f}"


def _pagination_caption(pagination: Optional[Pagination]) -> str:
    if pagination is None:
        return ""
    return (
        f"Page {pagination.current_page} of {pagination.total_pages}"
        f" · {pagination.total_items} total"
    )


class ConsoleUI:
    """Render service results as Rich tables and panels."""

    def __init__(self, *, console: Optional[Console] = None) -> None:
        self._console = console or Console()

    @property
    def console(self) -> Console:
        return self._console

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    def show_catalog(self, page: CatalogPage) -> None:
        if not page.courses:
            self._console.print(
                Panel(
                    "No courses match the current filters.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        table = Table(
            title=f"Courses ({page.pagination.total_items} of {page.total_courses})",
            caption=_pagination_caption(page.pagination),
            box=box.SIMPLE_HEAVY,
        )
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Title", style="bold")
        table.add_column("Category")
        table.add_column("Level")
        table.add_column("Tags")
        table.add_column("Price", justify="right")
        for course in page.courses:
            table.add_row(
                course.id,
                course.title,
                course.category or "-",
                course.level or "-",
                ", ".join(course.tags) or "-",
                _format_price(course.price),
            )
        self._console.print(table)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def show_users(self, users: Sequence[UserAccount], pagination: Optional[Pagination]) -> None:
        table = Table(title="Accounts", caption=_pagination_caption(pagination), box=box.SIMPLE_HEAVY)
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Name")
        table.add_column("Email")
        table.add_column("Status")
        for user in users:
            style = STATUS_STYLES.get(user.status, "white")
            table.add_row(user.id, user.name or "-", user.email, Text(user.status, style=style))
        if not users:
            table.add_row("-", "[dim]No accounts found", "", "")
        self._console.print(table)

    # ------------------------------------------------------------------
    # Certificates and progress
    # ------------------------------------------------------------------
    def show_verification(self, result: VerificationResult) -> None:
        if not result.found or result.certificate is None:
            self._console.print(
                Panel(
                    f"No certificate found for [bold]{result.certificate_id}[/bold].",
                    title="Certificate",
                    border_style="red",
                    box=box.ROUNDED,
                )
            )
            return

        certificate = result.certificate
        lines = [
            f"[bold]{certificate.certificate_id}[/bold]",
            f"Student: {certificate.student_name or '-'}",
            f"Course: {certificate.course_title or '-'}",
            f"Issued: {certificate.date_issued or '-'}",
        ]
        border = "green" if result.is_valid else "yellow"
        label = "Valid" if result.is_valid else "Not valid"
        self._console.print(
            Panel("\n".join(lines), title=f"Certificate · {label}", border_style=border, box=box.ROUNDED)
        )

    def show_certificate(self, record: Optional[CertificateRecord], *, course_id: str = "") -> None:
        if record is None:
            self.notify(f"No certificate issued for course {course_id or '-'} yet", style="yellow")
            return
        lines = [
            f"[bold]{record.certificate_id}[/bold]",
            f"Course: {record.course_title or '-'}",
            f"Issued: {record.date_issued or '-'}",
            f"Completed: {record.completion_date or '-'}",
        ]
        self._console.print(
            Panel("\n".join(lines), title="Certificate", border_style="green", box=box.ROUNDED)
        )

    def show_account(self, account: AccountStatus) -> None:
        style = STATUS_STYLES.get(account.status, "white")
        self._console.print(
            Text.assemble(
                (account.name or account.email or "Account", "bold"),
                f" ({account.email}) " if account.name and account.email else " ",
                (account.status, style),
            )
        )

    def show_progress(self, progress: CourseProgress) -> None:
        table = Table(
            title=progress.title or progress.course_id,
            caption=f"Overall {progress.overall.get('courseProgressPercentage', 0)}%",
            box=box.SIMPLE_HEAVY,
        )
        table.add_column("#", justify="right", style="dim")
        table.add_column("Video")
        table.add_column("Length", justify="right")
        table.add_column("Watched", justify="right")
        for video in progress.videos:
            entry = progress.progress.get(video.id)
            percentage = entry.watched_percentage if entry else 0
            watched = f"{percentage:.0f}%"
            if entry and entry.is_completed:
                watched = f"[green]{watched} ✓"
            table.add_row(str(video.order), video.title, video.display_duration, watched)
        self._console.print(table)

    def notify(self, message: str, *, style: str = "cyan") -> None:
        self._console.print(Text(message, style=style))


__all__ = ["ConsoleUI"]
