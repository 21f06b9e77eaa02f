"""
Exception taxonomy for gmail-cli.

Every failure the CLI or library surfaces derives from GmailCliError.
RestrictedOperationError is its own outcome class: callers branch on it to
"ask a human" instead of retrying.
"""


class GmailCliError(Exception):
    """Base class for all gmail-cli failures."""


class RestrictedOperationError(GmailCliError):
    """An operation was blocked by local policy. The remote API was never called."""

    def __init__(self, operation: str, guidance: str) -> None:
        self.operation = operation
        self.guidance = guidance
        super().__init__(f"RESTRICTED: {operation}\n\n{guidance}")


class DangerousLabelError(RestrictedOperationError):
    """Adding one or more dangerous labels without an explicit override."""

    def __init__(self, labels: list[str]) -> None:
        self.labels = list(labels)
        super().__init__(
            f"Refusing to add label(s): {', '.join(self.labels)}",
            "Use --allow-dangerous-labels to override.",
        )


class ScopeError(GmailCliError):
    """The account's recorded OAuth scopes do not cover a mutating call."""


class AuthorizationError(GmailCliError):
    """The OAuth authorization attempt failed."""


class StateMismatchError(AuthorizationError):
    """The callback's state parameter did not match the one we issued."""


class AuthorizationTimeout(AuthorizationError):
    """No callback arrived before the deadline."""


class StorageError(GmailCliError):
    """Local secret store failure."""


class AccountsFileError(StorageError):
    """accounts.json exists but is unreadable or malformed."""


class AccountError(GmailCliError):
    """Unknown or duplicate account, or missing/invalid client credentials."""


class LabelNotFoundError(GmailCliError):
    """A label named in a request does not exist on the account."""


class MailApiError(GmailCliError):
    """A call to the remote Gmail API failed."""
