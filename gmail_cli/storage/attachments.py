"""
On-disk cache for downloaded attachments.

Remote filenames are untrusted: they are reduced to a bare, printable name
and prefixed with the message id and a short attachment id, so two
attachments never collide and nothing escapes the attachments directory.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .secret_store import ensure_private_dir, write_bytes_atomic

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[\x00-\x1f\x7f/\\:]")
MAX_FILENAME_LENGTH = 200


def safe_filename(name: str) -> str:
    """Reduce an untrusted remote filename to a safe local basename."""
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    base = _UNSAFE_CHARS.sub("_", base).strip().lstrip(".")
    if not base:
        base = "attachment"
    return base[:MAX_FILENAME_LENGTH]


@dataclass
class AttachmentRef:
    message_id: str
    attachment_id: str
    filename: str
    size: int = 0
    mime_type: str = "application/octet-stream"


@dataclass
class AttachmentDownloadResult:
    success: bool
    filename: str
    message_id: str = ""
    path: Optional[Path] = None
    size: int = 0
    mime_type: str = ""
    cached: bool = False
    error: Optional[str] = None


class AttachmentCache:
    """Stores attachment bytes under <config-dir>/attachments (0700)."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, ref: AttachmentRef) -> Path:
        short_id = safe_filename(ref.attachment_id[:8])
        name = f"{safe_filename(ref.message_id)}_{short_id}_{safe_filename(ref.filename)}"
        return self.directory / name

    def download(
        self,
        refs: list[AttachmentRef],
        fetch: Callable[[AttachmentRef], bytes],
    ) -> list[AttachmentDownloadResult]:
        """
        Fetch each attachment unless a same-sized copy is already cached.

        One attachment's failure is recorded and does not stop the others.
        """
        ensure_private_dir(self.directory)
        results = []

        for ref in refs:
            path = self.path_for(ref)
            try:
                if ref.size and path.exists() and path.stat().st_size == ref.size:
                    results.append(self._result(ref, path, cached=True))
                    continue

                data = fetch(ref)
                write_bytes_atomic(path, data)
                results.append(self._result(ref, path, cached=False))
            except Exception as e:
                logger.error("Attachment %s/%s failed: %s", ref.message_id, ref.filename, e)
                results.append(
                    AttachmentDownloadResult(
                        success=False,
                        filename=ref.filename,
                        message_id=ref.message_id,
                        error=str(e),
                    )
                )

        return results

    @staticmethod
    def _result(ref: AttachmentRef, path: Path, cached: bool) -> AttachmentDownloadResult:
        return AttachmentDownloadResult(
            success=True,
            filename=ref.filename,
            message_id=ref.message_id,
            path=path,
            size=path.stat().st_size,
            mime_type=ref.mime_type,
            cached=cached,
        )
