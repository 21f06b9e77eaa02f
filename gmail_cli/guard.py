"""
Dangerous-operation guard.

Runs independently of OAuth scope and only ever narrows what is allowed:
- send and delete are refused outright, whatever the account was granted
- adding a dangerous label (TRASH, SPAM) needs an explicit per-call override

Blocks raise RestrictedOperationError so callers can tell "blocked by
policy" apart from "failed at Gmail".
"""

import logging

from .config.policy import DANGEROUS_LABELS, DELETE_GUIDANCE, SEND_GUIDANCE
from .errors import DangerousLabelError, RestrictedOperationError

logger = logging.getLogger(__name__)


def restricted_send() -> None:
    logger.warning("Blocked send attempt")
    raise RestrictedOperationError("Sending emails is not permitted via this CLI.", SEND_GUIDANCE)


def restricted_delete() -> None:
    logger.warning("Blocked delete attempt")
    raise RestrictedOperationError("Deleting emails is not permitted via this CLI.", DELETE_GUIDANCE)


def find_dangerous_labels(labels: list[str]) -> list[str]:
    """Every requested label in the dangerous set, in request order."""
    return [label for label in labels if label.strip().upper() in DANGEROUS_LABELS]


def check_label_additions(labels: list[str], allow_dangerous: bool = False) -> list[str]:
    """
    Pass labels through unchanged, or refuse them all at once.

    Raises:
        DangerousLabelError: naming every dangerous label requested, unless
            allow_dangerous is set for this call
    """
    if allow_dangerous:
        return labels

    dangerous = find_dangerous_labels(labels)
    if dangerous:
        logger.warning("Refused dangerous label(s): %s", ", ".join(dangerous))
        raise DangerousLabelError(dangerous)
    return labels
