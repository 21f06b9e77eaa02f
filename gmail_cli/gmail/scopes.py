"""
OAuth scope tiers and the capability check that runs before every mutation.

Two tiers:
- readonly: gmail.readonly only (dry-run accounts)
- live:     gmail.modify + gmail.labels (label edits, archiving)

An account with no recorded scopes is "unknown" and fails closed for every
mutation; the remote API is never asked to find out.
"""

import logging

from ..errors import ScopeError
from ..storage.models import Account

logger = logging.getLogger(__name__)

GMAIL_READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
GMAIL_MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"
GMAIL_LABELS_SCOPE = "https://www.googleapis.com/auth/gmail.labels"
GMAIL_FULL_SCOPE = "https://mail.google.com/"

READONLY_GMAIL_SCOPES = [GMAIL_READONLY_SCOPE]
DEFAULT_GMAIL_SCOPES = [
    GMAIL_MODIFY_SCOPE,  # read messages and threads, add and remove labels
    GMAIL_LABELS_SCOPE,  # create and edit labels
]

TIER_READONLY = "readonly"
TIER_LIVE = "live"

# Mutation classes and the scopes that each satisfy them
LABEL_WRITE = "label_write"
THREAD_MODIFY = "thread_modify"

MUTATION_SCOPES: dict[str, frozenset[str]] = {
    LABEL_WRITE: frozenset({GMAIL_LABELS_SCOPE, GMAIL_MODIFY_SCOPE, GMAIL_FULL_SCOPE}),
    THREAD_MODIFY: frozenset({GMAIL_MODIFY_SCOPE, GMAIL_FULL_SCOPE}),
}

# Scope named in the error when none of the accepted ones is present
_PREFERRED_SCOPE = {
    LABEL_WRITE: GMAIL_LABELS_SCOPE,
    THREAD_MODIFY: GMAIL_MODIFY_SCOPE,
}


def scopes_for_tier(tier: str) -> list[str]:
    if tier == TIER_READONLY:
        return list(READONLY_GMAIL_SCOPES)
    if tier == TIER_LIVE:
        return list(DEFAULT_GMAIL_SCOPES)
    raise ValueError(f"Unknown access tier: {tier}")


def describe_tier(scopes: list[str] | None) -> str:
    """unknown / readonly / live / limited, as shown by `accounts list`."""
    if not scopes:
        return "unknown"
    has_modify = GMAIL_MODIFY_SCOPE in scopes or GMAIL_FULL_SCOPE in scopes
    if has_modify:
        return "live"
    if GMAIL_READONLY_SCOPE in scopes:
        return "readonly"
    return "limited"


def has_capability(scopes: list[str] | None, mutation: str) -> bool:
    if not scopes:
        return False
    return not MUTATION_SCOPES[mutation].isdisjoint(scopes)


def require_scope(account: Account, mutation: str) -> None:
    """
    Refuse a mutation the account's recorded scopes do not cover.

    Raises:
        ScopeError: scopes unknown, or none of the accepted scopes granted
    """
    if mutation not in MUTATION_SCOPES:
        raise ValueError(f"Unknown mutation class: {mutation}")

    if not account.scopes:
        logger.warning("Refusing %s for %s: scopes unknown", mutation, account.email)
        raise ScopeError(
            f"Account '{account.email}' has no recorded OAuth scopes, so {mutation} "
            f"is refused.\nRe-authorize with: gmail-cli accounts upgrade {account.email}"
        )

    if not has_capability(account.scopes, mutation):
        needed = _PREFERRED_SCOPE[mutation]
        logger.warning("Refusing %s for %s: missing %s", mutation, account.email, needed)
        raise ScopeError(
            f"Account '{account.email}' ({describe_tier(account.scopes)}) lacks scope "
            f"{needed} required for {mutation}.\n"
            f"Upgrade with: gmail-cli accounts upgrade {account.email}"
        )
