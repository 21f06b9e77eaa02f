"""Value types returned by the Gmail client and the mail service."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class AttachmentMeta:
    filename: str
    mime_type: str
    size: int
    attachment_id: Optional[str] = None


@dataclass
class MessageSummary:
    id: str
    thread_id: str
    label_ids: list[str]
    snippet: str
    internal_date: str
    sender: Optional[str]
    to: Optional[str]
    subject: Optional[str]
    date: Optional[str]


@dataclass
class ThreadSummary:
    id: str
    history_id: str
    messages: list[MessageSummary] = field(default_factory=list)

    @property
    def label_ids(self) -> list[str]:
        """Union of all messages' labels, first-seen order (matches the web UI)."""
        seen: dict[str, None] = {}
        for msg in self.messages:
            for label_id in msg.label_ids:
                seen.setdefault(label_id, None)
        return list(seen)


@dataclass
class ThreadSearchResult:
    threads: list[ThreadSummary]
    next_page_token: Optional[str] = None


@dataclass
class ParsedMessage:
    id: str
    thread_id: str
    label_ids: list[str]
    headers: dict[str, str]
    body: str
    attachments: list[AttachmentMeta]


@dataclass
class Thread:
    id: str
    history_id: str
    messages: list[ParsedMessage] = field(default_factory=list)


@dataclass
class Label:
    id: str
    name: str
    type: str
    text_color: Optional[str] = None
    background_color: Optional[str] = None


@dataclass
class LabelOperationResult:
    thread_id: str
    success: bool
    error: Optional[str] = None
