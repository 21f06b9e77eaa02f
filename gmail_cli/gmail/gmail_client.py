"""
Gmail API client for one authenticated account.

Thin wrapper over googleapiclient: thread search and fetch, label listing
and editing, thread label changes, attachment bytes. It knows nothing about
policy; MailService checks scopes and the dangerous-label guard before
calling any mutating method here.
"""

import base64
import logging
import re

from bs4 import BeautifulSoup
from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config.policy import GMAIL_LABEL_COLORS
from ..errors import MailApiError
from ..storage.models import Account
from .gmail_auth import TOKEN_URI
from .models import (
    AttachmentMeta,
    Label,
    MessageSummary,
    ParsedMessage,
    Thread,
    ThreadSearchResult,
    ThreadSummary,
)

logger = logging.getLogger(__name__)

SUMMARY_HEADERS = ["From", "To", "Subject", "Date"]
DETAIL_HEADERS = ["From", "To", "Subject", "Date", "Reply-To", "List-Unsubscribe", "X-Mailer"]


def validate_label_color(color: str, name: str) -> str:
    """Return the normalised colour, or raise ValueError if Gmail won't accept it."""
    normalized = color.lower()
    if normalized not in GMAIL_LABEL_COLORS:
        raise ValueError(
            f"Invalid {name} color: {color}. Must be a hex code from Gmail's allowed palette."
        )
    return normalized


def _decode_body(data: str) -> str:
    """Decode a base64url-encoded Gmail message body."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _decode_bytes(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def _get_header(headers: list[dict], name: str) -> str | None:
    """Extract a header value by name from Gmail message headers."""
    for h in headers:
        if h.get("name", "").lower() == name.lower():
            return h.get("value") or None
    return None


def _html_to_text(html: str) -> str:
    """Strip an HTML body down to readable text."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "head", "meta", "link", "img", "svg", "noscript"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def _find_part(parts: list[dict] | None, mime_type: str) -> str | None:
    for part in parts or []:
        data = part.get("body", {}).get("data")
        if part.get("mimeType") == mime_type and data:
            return _decode_body(data)
        nested = _find_part(part.get("parts"), mime_type)
        if nested:
            return nested
    return None


def extract_body(payload: dict | None) -> str:
    """
    Text body of a message payload.

    Single-part bodies are returned decoded; multipart payloads prefer
    text/plain anywhere in the tree and fall back to stripped text/html.
    """
    if not payload:
        return ""

    data = payload.get("body", {}).get("data")
    if data:
        body = _decode_body(data)
        if payload.get("mimeType") == "text/html":
            return _html_to_text(body)
        return body

    plain = _find_part(payload.get("parts"), "text/plain")
    if plain:
        return plain

    html = _find_part(payload.get("parts"), "text/html")
    if html:
        return _html_to_text(html)

    return ""


def extract_attachments(payload: dict | None) -> list[AttachmentMeta]:
    """Every part with a filename, depth-first."""
    attachments: list[AttachmentMeta] = []

    def collect(parts: list[dict] | None) -> None:
        for part in parts or []:
            if part.get("filename"):
                body = part.get("body", {})
                attachments.append(
                    AttachmentMeta(
                        filename=part["filename"],
                        mime_type=part.get("mimeType") or "application/octet-stream",
                        size=body.get("size", 0) or 0,
                        attachment_id=body.get("attachmentId"),
                    )
                )
            collect(part.get("parts"))

    collect((payload or {}).get("parts"))
    return attachments


def _label_from_api(data: dict) -> Label:
    color = data.get("color") or {}
    return Label(
        id=data.get("id", ""),
        name=data.get("name", ""),
        type=data.get("type", "user"),
        text_color=color.get("textColor"),
        background_color=color.get("backgroundColor"),
    )


def credentials_for(account: Account) -> Credentials:
    """google.oauth2 credentials from a stored account; refreshed on demand."""
    return Credentials(
        token=account.oauth2.access_token,
        refresh_token=account.oauth2.refresh_token,
        token_uri=TOKEN_URI,
        client_id=account.oauth2.client_id,
        client_secret=account.oauth2.client_secret,
        scopes=account.scopes or None,
    )


class GmailClient:
    """Gmail API client for a single account."""

    def __init__(self, credentials: Credentials) -> None:
        self.credentials = credentials
        self._service = build("gmail", "v1", credentials=credentials, cache_discovery=False)

    @classmethod
    def for_account(cls, account: Account) -> "GmailClient":
        return cls(credentials_for(account))

    def _execute(self, request, what: str):
        try:
            return request.execute()
        except HttpError as e:
            logger.error("Gmail API %s failed: %s", what, e)
            raise MailApiError(f"{what} failed: {e}") from e
        except GoogleAuthError as e:
            logger.error("Gmail credentials rejected during %s: %s", what, e)
            raise MailApiError(f"{what} failed: {e}") from e

    # === Threads ===

    def search_threads(
        self,
        query: str = "",
        max_results: int = 10,
        page_token: str | None = None,
        label_ids: list[str] | None = None,
    ) -> ThreadSearchResult:
        """
        Search threads with Gmail query syntax.

        Returns thread summaries (metadata headers only, no bodies) and the
        continuation token for the next page, if any.
        """
        kwargs = {"userId": "me", "maxResults": max_results}
        if query:
            kwargs["q"] = query
        if page_token:
            kwargs["pageToken"] = page_token
        if label_ids:
            kwargs["labelIds"] = label_ids

        response = self._execute(self._service.users().threads().list(**kwargs), "threads.list")

        summaries = []
        for ref in response.get("threads", []):
            thread = self._execute(
                self._service.users().threads().get(
                    userId="me", id=ref["id"], format="metadata", metadataHeaders=SUMMARY_HEADERS
                ),
                "threads.get",
            )
            summaries.append(self._summarize(thread))

        return ThreadSearchResult(threads=summaries, next_page_token=response.get("nextPageToken"))

    def get_thread(self, thread_id: str) -> Thread:
        data = self._execute(
            self._service.users().threads().get(userId="me", id=thread_id, format="full"),
            "threads.get",
        )
        messages = []
        for msg in data.get("messages", []):
            payload = msg.get("payload", {})
            raw_headers = payload.get("headers", [])
            headers = {}
            for name in DETAIL_HEADERS:
                value = _get_header(raw_headers, name)
                if value is not None:
                    headers[name] = value
            messages.append(
                ParsedMessage(
                    id=msg.get("id", ""),
                    thread_id=msg.get("threadId", ""),
                    label_ids=msg.get("labelIds", []),
                    headers=headers,
                    body=extract_body(payload),
                    attachments=extract_attachments(payload),
                )
            )
        return Thread(id=data.get("id", thread_id), history_id=data.get("historyId", ""), messages=messages)

    def modify_thread_labels(
        self, thread_id: str, add: list[str] | None = None, remove: list[str] | None = None
    ) -> None:
        body = {}
        if add:
            body["addLabelIds"] = add
        if remove:
            body["removeLabelIds"] = remove
        self._execute(
            self._service.users().threads().modify(userId="me", id=thread_id, body=body),
            "threads.modify",
        )

    # === Labels ===

    def list_labels(self) -> list[Label]:
        response = self._execute(self._service.users().labels().list(userId="me"), "labels.list")
        return [_label_from_api(l) for l in response.get("labels", [])]

    def get_label(self, label_id: str) -> Label:
        data = self._execute(self._service.users().labels().get(userId="me", id=label_id), "labels.get")
        return _label_from_api(data)

    def create_label(
        self,
        name: str,
        text_color: str | None = None,
        background_color: str | None = None,
        show_in_list: bool = True,
        show_in_message_list: bool = True,
    ) -> Label:
        body: dict = {
            "name": name,
            "labelListVisibility": "labelShow" if show_in_list else "labelHide",
            "messageListVisibility": "show" if show_in_message_list else "hide",
        }
        color = {}
        if text_color:
            color["textColor"] = validate_label_color(text_color, "text")
        if background_color:
            color["backgroundColor"] = validate_label_color(background_color, "background")
        if color:
            body["color"] = color

        data = self._execute(self._service.users().labels().create(userId="me", body=body), "labels.create")
        return _label_from_api(data)

    def update_label(
        self,
        label_id: str,
        name: str | None = None,
        text_color: str | None = None,
        background_color: str | None = None,
    ) -> Label:
        # Validate before any network call
        if text_color:
            text_color = validate_label_color(text_color, "text")
        if background_color:
            background_color = validate_label_color(background_color, "background")

        current = self.get_label(label_id)
        body: dict = {"name": name or current.name}
        if text_color or background_color:
            # Gmail requires both colours whenever either is set
            body["color"] = {
                "textColor": (text_color or current.text_color or "#000000").lower(),
                "backgroundColor": (background_color or current.background_color or "#ffffff").lower(),
            }

        data = self._execute(
            self._service.users().labels().update(userId="me", id=label_id, body=body),
            "labels.update",
        )
        return _label_from_api(data)

    # === Attachments ===

    def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        data = self._execute(
            self._service.users().messages().attachments().get(
                userId="me", messageId=message_id, id=attachment_id
            ),
            "attachments.get",
        )
        return _decode_bytes(data.get("data", ""))

    @staticmethod
    def _summarize(thread: dict) -> ThreadSummary:
        messages = []
        for msg in thread.get("messages", []):
            payload = msg.get("payload", {})
            headers = payload.get("headers", [])
            messages.append(
                MessageSummary(
                    id=msg.get("id", ""),
                    thread_id=msg.get("threadId", ""),
                    label_ids=msg.get("labelIds", []),
                    snippet=msg.get("snippet", ""),
                    internal_date=msg.get("internalDate", ""),
                    sender=_get_header(headers, "From"),
                    to=_get_header(headers, "To"),
                    subject=_get_header(headers, "Subject"),
                    date=_get_header(headers, "Date"),
                )
            )
        return ThreadSummary(id=thread.get("id", ""), history_id=thread.get("historyId", ""), messages=messages)
