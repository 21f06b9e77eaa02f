"""
Terminal output for gmail-cli.

Mail content is attacker-controlled: every field that reaches the terminal
goes through sanitize_for_terminal() or sanitize_single_line() first.
Tabular output is tab-separated so agents can split it without guessing
column widths; only the audit log view uses a rich table.
"""

import logging
import math
import re
from datetime import timezone
from email.utils import parsedate_to_datetime

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .gmail.models import Label, LabelOperationResult, Thread, ThreadSearchResult
from .gmail.scopes import describe_tier
from .storage.attachments import AttachmentDownloadResult
from .storage.models import Account, AuditEntry

logger = logging.getLogger(__name__)
console = Console()

# C0 controls except \t and \n, DEL, and C1 controls (includes ESC/CSI)
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")


def sanitize_for_terminal(value: str | None) -> str:
    """Normalise newlines and strip control characters (no escape sequences survive)."""
    if not value:
        return ""
    value = value.replace("\r\n", "\n").replace("\r", "\n")
    return CONTROL_CHARS.sub("", value)


def sanitize_single_line(value: str | None) -> str:
    """sanitize_for_terminal() folded onto one line, safe inside a TSV column."""
    value = sanitize_for_terminal(value)
    return re.sub(r"\n+", " ", value).replace("\t", " ").strip()


def format_size(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    i = min(int(math.log(size, 1024)), len(units) - 1)
    if i == 0:
        return f"{size} B"
    return f"{size / 1024 ** i:.1f} {units[i]}"


def format_date(value: str | None) -> str:
    """RFC 2822 Date header -> 'YYYY-MM-DD HH:MM' (UTC); unparseable dates are dropped."""
    if not value:
        return ""
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return ""
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.strftime("%Y-%m-%d %H:%M")


def emit(line: str = "") -> None:
    """Plain line to stdout. Bypasses rich, which would expand tabs and wrap."""
    print(line, flush=True)


def tier_suffix(scopes: list[str] | None) -> str:
    return f" ({describe_tier(scopes)})"


# === Accounts ===

def show_accounts(accounts: list[Account], default: str | None) -> None:
    if not accounts:
        emit("No accounts configured")
        return
    for account in accounts:
        marker = " (default)" if account.email == default else ""
        emit(f"{sanitize_single_line(account.email)}{tier_suffix(account.scopes)}{marker}")


# === Threads ===

def show_search_results(result: ThreadSearchResult, id_to_name: dict[str, str]) -> None:
    if not result.threads:
        emit("No results")
        return

    emit("ID\tDATE\tFROM\tSUBJECT\tLABELS")
    for thread in result.threads:
        first = thread.messages[0] if thread.messages else None
        date = format_date(first.date) if first else ""
        sender = sanitize_single_line(first.sender if first else "")
        subject = sanitize_single_line(first.subject if first else "") or "(no subject)"
        labels = ",".join(sanitize_single_line(id_to_name.get(l, l)) for l in thread.label_ids)
        emit(f"{sanitize_single_line(thread.id)}\t{date}\t{sender}\t{subject}\t{labels}")

    if result.next_page_token:
        emit()
        emit(f"# Next page: --page {sanitize_single_line(result.next_page_token)}")


def show_thread(thread: Thread) -> None:
    for msg in thread.messages:
        emit(f"Message-ID: {sanitize_single_line(msg.id)}")
        for header in ("From", "To", "Date", "Subject"):
            emit(f"{header}: {sanitize_single_line(msg.headers.get(header))}")
        emit()
        emit(sanitize_for_terminal(msg.body))
        emit()
        if msg.attachments:
            emit("Attachments:")
            for att in msg.attachments:
                emit(
                    f"  - {sanitize_single_line(att.filename)} "
                    f"({format_size(att.size)}, {sanitize_single_line(att.mime_type)})"
                )
            emit()
        emit("---")


def show_downloads(results: list[AttachmentDownloadResult]) -> None:
    if not results:
        emit("No attachments")
        return
    emit("FILENAME\tPATH\tSIZE")
    for r in results:
        if r.success:
            emit(f"{sanitize_single_line(r.filename)}\t{sanitize_single_line(str(r.path))}\t{r.size}")
        else:
            emit(f"{sanitize_single_line(r.filename)}\tERROR: {sanitize_single_line(r.error)}\t0")


# === Labels ===

def show_labels(labels: list[Label]) -> None:
    emit("ID\tNAME\tTYPE\tTEXT_COLOR\tBG_COLOR")
    for label in labels:
        emit(
            "\t".join(
                sanitize_single_line(v)
                for v in (label.id, label.name, label.type, label.text_color, label.background_color)
            )
        )


def describe_label(verb: str, label: Label) -> str:
    line = f"{verb} label: {sanitize_single_line(label.name)} ({sanitize_single_line(label.id)})"
    if label.text_color or label.background_color:
        line += f" [text: {label.text_color or 'default'}, bg: {label.background_color or 'default'}]"
    return line


def show_label_results(results: list[LabelOperationResult]) -> None:
    for r in results:
        outcome = "ok" if r.success else sanitize_single_line(r.error or "error")
        emit(f"{sanitize_single_line(r.thread_id)}: {outcome}")


# === Audit ===

def show_audit_entries(entries: list[AuditEntry], limit: int) -> None:
    console.print(f"\n[bold]Recent audit log ({limit} entries)[/bold]\n")
    if not entries:
        console.print("[dim]No entries found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Timestamp", style="dim")
    table.add_column("Level")
    table.add_column("Action")
    table.add_column("Account")
    table.add_column("Details")

    for entry in entries:
        level_color = "red" if entry.level == "CRITICAL" else "yellow" if entry.level == "WARNING" else "white"
        details = sanitize_single_line(entry.details)
        if len(details) > 60:
            details = details[:60] + "..."
        table.add_row(
            entry.timestamp.isoformat()[:19],
            f"[{level_color}]{entry.level}[/{level_color}]",
            escape(sanitize_single_line(entry.action)),
            escape(sanitize_single_line(entry.account)),
            escape(details),
        )
    console.print(table)
