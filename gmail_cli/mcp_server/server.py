"""
FastMCP server exposing the guarded Gmail surface to agents.

Every tool goes through MailService, so the same policy applies as on the
command line: send and delete are always refused, TRASH/SPAM need an
explicit override, and mutations need a recorded scope that covers them.

Outcomes are distinct:
    {"restricted": True, ...}  blocked by local policy; ask a human
    {"error": ...}             anything else went wrong
"""

import logging

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from ..config.settings import Config
from ..errors import GmailCliError, RestrictedOperationError
from ..gmail.models import Thread, ThreadSearchResult
from ..gmail.service import MailService, thread_url

load_dotenv()

logger = logging.getLogger(__name__)

mcp = FastMCP("gmail-cli")

_service: MailService | None = None


def _get_service() -> MailService:
    """Lazy-load MailService so importing the server never touches disk."""
    global _service
    if _service is None:
        _service = MailService(Config.from_env())
    return _service


def _restricted(e: RestrictedOperationError) -> dict:
    return {"restricted": True, "operation": e.operation, "guidance": e.guidance}


def _error(what: str, e: Exception) -> dict:
    logger.error("%s failed: %s", what, e)
    return {"error": str(e)}


def _search_result_to_dict(result: ThreadSearchResult, id_to_name: dict[str, str]) -> dict:
    threads = []
    for thread in result.threads:
        first = thread.messages[0] if thread.messages else None
        threads.append(
            {
                "id": thread.id,
                "date": first.date if first else None,
                "from": first.sender if first else None,
                "subject": first.subject if first else None,
                "snippet": first.snippet if first else "",
                "labels": [id_to_name.get(l, l) for l in thread.label_ids],
                "message_count": len(thread.messages),
            }
        )
    return {"threads": threads, "next_page_token": result.next_page_token}


def _thread_to_dict(thread: Thread) -> dict:
    return {
        "id": thread.id,
        "messages": [
            {
                "id": msg.id,
                "labels": msg.label_ids,
                "headers": msg.headers,
                "body": msg.body,
                "attachments": [
                    {"filename": a.filename, "mime_type": a.mime_type, "size": a.size}
                    for a in msg.attachments
                ],
            }
            for msg in thread.messages
        ],
    }


@mcp.tool()
def search_threads(
    query: str = "",
    max_results: int = 10,
    page_token: str | None = None,
    labels: list[str] | None = None,
    account: str | None = None,
) -> dict:
    """
    Search Gmail threads using Gmail query syntax.

    Args:
        query: e.g. "in:inbox is:unread from:boss@example.com"
        max_results: Threads per page (default 10)
        page_token: next_page_token from a previous call
        labels: Restrict to these label names or IDs
        account: Account email (default: configured default account)

    Returns:
        {"threads": [...], "next_page_token": str | None}
    """
    try:
        service = _get_service()
        email = service.resolve_account(account)
        result = service.search_threads(
            email, query=query, max_results=max_results, page_token=page_token, labels=labels
        )
        id_to_name, _ = service.get_label_map(email) if result.threads else ({}, {})
        return _search_result_to_dict(result, id_to_name)
    except (GmailCliError, ValueError) as e:
        return _error("search_threads", e)


@mcp.tool()
def get_thread(thread_id: str, account: str | None = None) -> dict:
    """
    Fetch every message in a thread: headers, text body, attachment metadata.

    Returns:
        {"id": str, "messages": [...]}
    """
    try:
        service = _get_service()
        return _thread_to_dict(service.get_thread(service.resolve_account(account), thread_id))
    except (GmailCliError, ValueError) as e:
        return _error("get_thread", e)


@mcp.tool()
def list_labels(account: str | None = None) -> dict:
    """List the account's labels (system and user)."""
    try:
        service = _get_service()
        labels = service.list_labels(service.resolve_account(account))
        return {
            "labels": [
                {
                    "id": l.id,
                    "name": l.name,
                    "type": l.type,
                    "text_color": l.text_color,
                    "background_color": l.background_color,
                }
                for l in labels
            ]
        }
    except (GmailCliError, ValueError) as e:
        return _error("list_labels", e)


@mcp.tool()
def modify_labels(
    thread_ids: list[str],
    add: list[str] | None = None,
    remove: list[str] | None = None,
    allow_dangerous_labels: bool = False,
    account: str | None = None,
) -> dict:
    """
    Add and/or remove labels on threads.

    Adding TRASH or SPAM is refused unless allow_dangerous_labels is true.
    Per-thread failures are reported individually.

    Returns:
        {"results": [{"thread_id", "success", "error"}]}, or a restricted/error outcome
    """
    try:
        service = _get_service()
        results = service.modify_labels(
            service.resolve_account(account),
            thread_ids,
            add=add,
            remove=remove,
            allow_dangerous=allow_dangerous_labels,
        )
        return {
            "results": [
                {"thread_id": r.thread_id, "success": r.success, "error": r.error} for r in results
            ]
        }
    except RestrictedOperationError as e:
        return _restricted(e)
    except (GmailCliError, ValueError) as e:
        return _error("modify_labels", e)


@mcp.tool()
def get_thread_url(thread_id: str, account: str | None = None) -> dict:
    """Gmail web URL for a thread, for handing off to a human."""
    try:
        email = _get_service().resolve_account(account)
        return {"thread_id": thread_id, "url": thread_url(email, thread_id)}
    except GmailCliError as e:
        return _error("get_thread_url", e)


@mcp.tool()
def send_email(to: str = "", subject: str = "", body: str = "", account: str | None = None) -> dict:
    """
    Not permitted. Always returns a restricted outcome with guidance for a human.
    """
    try:
        _get_service().send(account)
    except RestrictedOperationError as e:
        return _restricted(e)
    return {"error": "send_email returned without refusal"}


@mcp.tool()
def delete_email(thread_id: str = "", account: str | None = None) -> dict:
    """
    Not permitted. Always returns a restricted outcome with guidance for a human.
    """
    try:
        _get_service().delete(account)
    except RestrictedOperationError as e:
        return _restricted(e)
    return {"error": "delete_email returned without refusal"}
