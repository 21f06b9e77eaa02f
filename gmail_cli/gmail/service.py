"""
MailService — the library entry point shared by the CLI and the MCP server.

Order of checks for every mutating call, before Gmail is contacted:
    1. dangerous-operation guard (send/delete/dangerous labels)
    2. recorded-scope check (fails closed on unknown scopes)
    3. local validation (label existence, colour palette)

API clients are cached per account email and dropped whenever that
account's tokens are replaced or the account is removed.
"""

import json
import logging
from pathlib import Path
from typing import Callable
from urllib.parse import quote

from rich.console import Console

from ..config.settings import Config
from ..errors import (
    AccountError,
    DangerousLabelError,
    LabelNotFoundError,
    MailApiError,
    ScopeError,
)
from ..guard import check_label_additions, restricted_delete, restricted_send
from ..storage.attachments import AttachmentCache, AttachmentDownloadResult, AttachmentRef
from ..storage.audit import AuditLogger, NullAuditLogger
from ..storage.models import Account, ClientCredentials, OAuth2Bundle
from ..storage.secret_store import SecretStore
from .gmail_auth import GmailOAuthFlow
from .gmail_client import GmailClient
from .models import Label, LabelOperationResult, Thread, ThreadSearchResult
from .scopes import (
    DEFAULT_GMAIL_SCOPES,
    LABEL_WRITE,
    THREAD_MODIFY,
    TIER_LIVE,
    TIER_READONLY,
    describe_tier,
    require_scope,
    scopes_for_tier,
)

logger = logging.getLogger(__name__)


def resolve_label_ids(labels: list[str], name_to_id: dict[str, str]) -> list[str]:
    """Map label names (case-insensitive) to IDs; unknown values pass through as IDs."""
    return [name_to_id.get(label.lower(), label) for label in labels]


def split_labels(value: str | list[str] | None) -> list[str]:
    """Accept "A,B" or ["A", "B,C"]; drop blanks."""
    if not value:
        return []
    items = [value] if isinstance(value, str) else value
    return [part.strip() for item in items for part in item.split(",") if part.strip()]


def thread_url(email: str, thread_id: str) -> str:
    """Canonical Gmail web URL for a thread, pinned to the account."""
    return f"https://mail.google.com/mail/?authuser={quote(email, safe='')}#all/{quote(thread_id, safe='')}"


class MailService:
    """Guarded Gmail operations over locally stored accounts."""

    def __init__(
        self,
        config: Config | None = None,
        store: SecretStore | None = None,
        audit: AuditLogger | None = None,
        client_factory: Callable[[Account], GmailClient] = GmailClient.for_account,
        flow_factory: Callable[..., GmailOAuthFlow] = GmailOAuthFlow,
        console: Console | None = None,
    ) -> None:
        self.config = config or Config.from_env()
        self._store = store
        self._audit = audit
        self._client_factory = client_factory
        self._flow_factory = flow_factory
        self.console = console
        self._memory_accounts: dict[str, Account] = {}
        self._memory_only = False
        self._clients: dict[str, GmailClient] = {}

    @classmethod
    def in_memory(cls, accounts: list[Account], **kwargs) -> "MailService":
        """A service over caller-supplied accounts that never reads or writes disk."""
        kwargs.setdefault("audit", NullAuditLogger())
        service = cls(**kwargs)
        service._memory_only = True
        for account in accounts:
            service.set_account_tokens(account, persist=False)
        return service

    # === Lazily created collaborators ===

    @property
    def store(self) -> SecretStore:
        if self._memory_only:
            raise AccountError("This service holds in-memory accounts only")
        if self._store is None:
            self._store = SecretStore(self.config.config_dir)
        return self._store

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            if self.config.audit_enabled:
                self._audit = AuditLogger(self.config.audit_log_path)
            else:
                self._audit = NullAuditLogger()
        return self._audit

    # === Accounts ===

    def get_account(self, email: str) -> Account:
        account = self._memory_accounts.get(email)
        if account is None and not self._memory_only:
            account = self.store.get_account(email)
        if account is None:
            raise AccountError(f"Account '{email}' not found")
        return account

    def list_accounts(self) -> list[Account]:
        accounts: dict[str, Account] = {}
        if not self._memory_only:
            accounts.update((a.email, a) for a in self.store.list_accounts())
        accounts.update(self._memory_accounts)
        return list(accounts.values())

    def has_account(self, email: str) -> bool:
        if email in self._memory_accounts:
            return True
        return not self._memory_only and self.store.has_account(email)

    def set_account_tokens(self, account: Account, persist: bool = True) -> None:
        """Replace an account's token bundle and scopes; drops its cached client."""
        if persist and not self._memory_only:
            self.store.add_account(account)
            self._memory_accounts.pop(account.email, None)
        else:
            self._memory_accounts[account.email] = account
        self.invalidate_client(account.email)

    def add_account(self, email: str, manual: bool = False, readonly: bool = False) -> Account:
        """
        Authorize a new account and persist it.

        The first account added becomes the default.

        Raises:
            AccountError: account already exists, or no client credentials
            AuthorizationError: the OAuth flow failed
        """
        if self.has_account(email):
            raise AccountError(f"Account '{email}' already exists")
        credentials = self._require_credentials()

        tier = TIER_READONLY if readonly else TIER_LIVE
        flow = self._flow_factory(
            credentials.client_id,
            credentials.client_secret,
            scopes=scopes_for_tier(tier),
            include_granted_scopes=False,
            timeout=self.config.auth_timeout,
            console=self.console,
        )
        result = flow.authorize(manual=manual)

        account = Account(
            email=email,
            oauth2=OAuth2Bundle(
                client_id=credentials.client_id,
                client_secret=credentials.client_secret,
                refresh_token=result.refresh_token,
                access_token=result.access_token,
            ),
            scopes=result.scopes,
        )
        self.set_account_tokens(account)
        self.audit.log_account_event(
            "account_added", email, f"requested={tier} granted={describe_tier(account.scopes)}"
        )
        logger.info("Added account %s (%s)", email, describe_tier(account.scopes))

        if len(self.list_accounts()) == 1:
            self.store.set_default_account(email)
        return account

    def upgrade_account(self, email: str, manual: bool = False) -> Account:
        """
        Re-authorize an existing account for live access.

        The new grant replaces the old one: previously granted scopes are not
        carried over and the consent screen is always shown.
        """
        previous = self.get_account(email)
        credentials = self._require_credentials()

        flow = self._flow_factory(
            credentials.client_id,
            credentials.client_secret,
            scopes=list(DEFAULT_GMAIL_SCOPES),
            include_granted_scopes=False,
            prompt="consent",
            timeout=self.config.auth_timeout,
            console=self.console,
        )
        result = flow.authorize(manual=manual)

        account = Account(
            email=email,
            oauth2=OAuth2Bundle(
                client_id=credentials.client_id,
                client_secret=credentials.client_secret,
                refresh_token=result.refresh_token,
                access_token=result.access_token,
            ),
            scopes=result.scopes,
        )
        self.set_account_tokens(account)
        self.audit.log_account_event(
            "account_upgraded",
            email,
            f"{describe_tier(previous.scopes)} -> {describe_tier(account.scopes)}",
        )
        logger.info("Upgraded account %s to %s", email, describe_tier(account.scopes))
        return account

    def remove_account(self, email: str) -> tuple[bool, bool]:
        """Returns (deleted, was_default). Clears the default pointer if needed."""
        self.invalidate_client(email)
        in_memory = self._memory_accounts.pop(email, None) is not None
        if self._memory_only:
            return in_memory, False

        was_default = self.store.get_default_account() == email
        deleted = self.store.delete_account(email) or in_memory
        if deleted:
            self.audit.log_account_event("account_removed", email)
        return deleted, was_default and deleted

    # === Credentials / default account ===

    def set_credentials(self, credentials: ClientCredentials) -> None:
        self.store.set_credentials(credentials)
        self.audit.log("credentials_set", details=f"client_id={credentials.client_id}")

    def import_credentials_file(self, path: str | Path) -> ClientCredentials:
        """Load a Google Cloud client_secret*.json and store its id/secret."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            credentials = ClientCredentials.from_google_client_secrets(data)
        except (OSError, ValueError) as e:
            raise AccountError(f"Invalid credentials file {path}: {e}") from e
        self.set_credentials(credentials)
        return credentials

    def get_credentials(self) -> ClientCredentials | None:
        return self.store.get_credentials()

    def set_default_account(self, email: str) -> None:
        if not self.has_account(email):
            raise AccountError(
                f"Account '{email}' not found. Add it first with: gmail-cli accounts add {email}"
            )
        self.store.set_default_account(email)

    def get_default_account(self) -> str | None:
        if self._memory_only:
            return None
        return self.store.get_default_account()

    def resolve_account(self, explicit: str | None = None) -> str:
        """Explicit account, else the configured default."""
        if explicit:
            return explicit
        default = self.get_default_account()
        if not default:
            raise AccountError("No default account configured. Run: gmail-cli config default <email>")
        return default

    def _require_credentials(self) -> ClientCredentials:
        credentials = self.get_credentials()
        if credentials is None:
            raise AccountError(
                "No credentials configured. Run: gmail-cli accounts credentials <credentials.json>"
            )
        return credentials

    # === Client cache ===

    def _client(self, email: str) -> GmailClient:
        client = self._clients.get(email)
        if client is None:
            client = self._client_factory(self.get_account(email))
            self._clients[email] = client
        return client

    def invalidate_client(self, email: str) -> None:
        if self._clients.pop(email, None) is not None:
            logger.debug("Dropped cached Gmail client for %s", email)

    def _require(self, account: Account, mutation: str) -> None:
        try:
            require_scope(account, mutation)
        except ScopeError as e:
            self.audit.log_scope_refusal(mutation, account.email, str(e).splitlines()[0])
            raise

    # === Read operations ===

    def search_threads(
        self,
        email: str,
        query: str = "",
        max_results: int = 10,
        page_token: str | None = None,
        labels: list[str] | None = None,
    ) -> ThreadSearchResult:
        label_ids = None
        if labels:
            _, name_to_id = self.get_label_map(email)
            label_ids = resolve_label_ids(labels, name_to_id)
        return self._client(email).search_threads(
            query=query, max_results=max_results, page_token=page_token, label_ids=label_ids
        )

    def get_thread(self, email: str, thread_id: str) -> Thread:
        return self._client(email).get_thread(thread_id)

    def list_labels(self, email: str) -> list[Label]:
        return self._client(email).list_labels()

    def get_label_map(self, email: str) -> tuple[dict[str, str], dict[str, str]]:
        """Returns (id_to_name, lower-cased name_to_id)."""
        id_to_name: dict[str, str] = {}
        name_to_id: dict[str, str] = {}
        for label in self.list_labels(email):
            id_to_name[label.id] = label.name
            name_to_id[label.name.lower()] = label.id
        return id_to_name, name_to_id

    def download_thread_attachments(self, email: str, thread_id: str) -> list[AttachmentDownloadResult]:
        client = self._client(email)
        thread = client.get_thread(thread_id)
        refs = [
            AttachmentRef(
                message_id=msg.id,
                attachment_id=att.attachment_id,
                filename=att.filename,
                size=att.size,
                mime_type=att.mime_type,
            )
            for msg in thread.messages
            for att in msg.attachments
            if att.attachment_id
        ]
        cache = AttachmentCache(self.config.attachments_dir)
        return cache.download(refs, lambda ref: client.get_attachment(ref.message_id, ref.attachment_id))

    # === Guarded mutations ===

    def create_label(
        self,
        email: str,
        name: str,
        text_color: str | None = None,
        background_color: str | None = None,
    ) -> Label:
        account = self.get_account(email)
        self._require(account, LABEL_WRITE)
        label = self._client(email).create_label(
            name, text_color=text_color, background_color=background_color
        )
        logger.info("Created label %s for %s", label.id, email)
        return label

    def update_label(
        self,
        email: str,
        label: str,
        name: str | None = None,
        text_color: str | None = None,
        background_color: str | None = None,
    ) -> Label:
        """Rename and/or recolour a label given by name or ID."""
        if not (name or text_color or background_color):
            raise ValueError("At least one of name, text color or background color is required")
        account = self.get_account(email)
        self._require(account, LABEL_WRITE)

        _, name_to_id = self.get_label_map(email)
        label_id = resolve_label_ids([label], name_to_id)[0]
        updated = self._client(email).update_label(
            label_id, name=name, text_color=text_color, background_color=background_color
        )
        logger.info("Updated label %s for %s", updated.id, email)
        return updated

    def modify_labels(
        self,
        email: str,
        thread_ids: list[str],
        add: list[str] | None = None,
        remove: list[str] | None = None,
        allow_dangerous: bool = False,
    ) -> list[LabelOperationResult]:
        """
        Add/remove labels on each thread.

        Policy and scope failures raise before any thread is touched. Remote
        failures are collected per thread; one failure does not stop the rest.
        """
        add = split_labels(add)
        remove = split_labels(remove)
        account = self.get_account(email)

        try:
            check_label_additions(add, allow_dangerous=allow_dangerous)
        except DangerousLabelError as e:
            self.audit.log_policy_block("dangerous_label", email, ", ".join(e.labels))
            raise

        self._require(account, THREAD_MODIFY)

        if not thread_ids:
            raise ValueError("At least one thread ID is required")
        if not add and not remove:
            raise ValueError("Nothing to do: pass labels to add and/or remove")

        id_to_name, name_to_id = self.get_label_map(email)
        missing = [l for l in add if l.lower() not in name_to_id and l not in id_to_name]
        if missing:
            raise LabelNotFoundError(
                f"Label(s) not found: {', '.join(missing)}\n"
                "Create them first with: gmail-cli labels create <name>\n"
                "Or list existing labels with: gmail-cli labels list"
            )

        add_ids = resolve_label_ids(add, name_to_id)
        remove_ids = resolve_label_ids(remove, name_to_id)
        client = self._client(email)

        results = []
        for thread_id in thread_ids:
            try:
                client.modify_thread_labels(thread_id, add=add_ids, remove=remove_ids)
                results.append(LabelOperationResult(thread_id=thread_id, success=True))
            except MailApiError as e:
                results.append(LabelOperationResult(thread_id=thread_id, success=False, error=str(e)))

        failed = sum(1 for r in results if not r.success)
        logger.info("Modified labels on %d/%d thread(s) for %s", len(results) - failed, len(results), email)
        return results

    def send(self, email: str | None = None, **_ignored) -> None:
        """Always refused. Never contacts Gmail."""
        self.audit.log_policy_block("send", email or "")
        restricted_send()

    def delete(self, email: str | None = None, **_ignored) -> None:
        """Always refused. Never contacts Gmail."""
        self.audit.log_policy_block("delete", email or "")
        restricted_delete()
