"""
Local secret store for client credentials, account tokens and CLI config.

Layout under the config directory (default ~/.gmail-cli):
    credentials.json  single OAuth client id/secret pair
    accounts.json     list of account records (email, oauth2 bundle, scopes)
    config.json       {"defaultAccount": ...}

Every write goes to a temp file in the same directory and is renamed into
place, so a crash mid-write never leaves a half-written file. Files are 0600,
the directory 0700.

A corrupt accounts.json is a hard error: losing tokens silently is worse than
refusing to start. Corrupt credentials/config are treated as absent since
they can be recreated by re-running setup.
"""

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path

from ..config.settings import DEFAULT_CONFIG_DIR
from ..errors import AccountsFileError
from .models import Account, ClientCredentials

logger = logging.getLogger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600


def ensure_private_dir(path: Path) -> Path:
    """Create path (and any missing parents) readable by the owner only. Idempotent."""
    missing = []
    current = Path(path)
    while not current.exists():
        missing.append(current)
        current = current.parent
    for directory in reversed(missing):
        directory.mkdir(mode=DIR_MODE, exist_ok=True)
        # mkdir's mode is filtered through the umask
        os.chmod(directory, DIR_MODE)
    return Path(path)


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Write data to path via temp file + rename, owner-only permissions."""
    fd, tmp_path = tempfile.mkstemp(prefix=f".tmp-{path.name}-", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, FILE_MODE)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


class SecretStore:
    """Owns the persisted accounts, client credentials and default-account pointer."""

    def __init__(self, config_dir: str | os.PathLike | None = None) -> None:
        self.config_dir = Path(config_dir).expanduser() if config_dir else DEFAULT_CONFIG_DIR
        self.accounts_file = self.config_dir / "accounts.json"
        self.credentials_file = self.config_dir / "credentials.json"
        self.config_file = self.config_dir / "config.json"
        self._accounts: dict[str, Account] = self._load_accounts()

    # === Filesystem ===

    def ensure_root(self) -> Path:
        return ensure_private_dir(self.config_dir)

    def _load_accounts(self) -> dict[str, Account]:
        if not self.accounts_file.exists():
            return {}

        try:
            data = json.loads(self.accounts_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise AccountsFileError(f"Failed to parse accounts file: {self.accounts_file}") from e

        if not isinstance(data, list):
            raise AccountsFileError(
                f"Failed to parse accounts file: {self.accounts_file} (expected a list of accounts)"
            )

        accounts: dict[str, Account] = {}
        for record in data:
            try:
                account = Account.from_dict(record)
            except (KeyError, TypeError, AttributeError) as e:
                raise AccountsFileError(
                    f"Failed to parse accounts file: {self.accounts_file} (malformed account record)"
                ) from e
            accounts[account.email] = account

        logger.debug("Loaded %d account(s) from %s", len(accounts), self.accounts_file)
        return accounts

    def _write_json_atomic(self, path: Path, data) -> None:
        self.ensure_root()
        payload = json.dumps(data, indent=2).encode("utf-8")
        write_bytes_atomic(path, payload)
        logger.debug("Wrote %s", path.name)

    def _read_json_soft(self, path: Path) -> dict | None:
        """Read a recoverable JSON file; corrupt or missing means absent."""
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable %s: %s", path.name, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: expected a JSON object", path.name)
            return None
        return data

    def _save_accounts(self) -> None:
        self._write_json_atomic(
            self.accounts_file, [a.to_dict() for a in self._accounts.values()]
        )

    # === Accounts ===

    def add_account(self, account: Account) -> None:
        """Insert or replace the account keyed by its email."""
        self._accounts[account.email] = account
        self._save_accounts()

    def get_account(self, email: str) -> Account | None:
        return self._accounts.get(email)

    def list_accounts(self) -> list[Account]:
        return list(self._accounts.values())

    def has_account(self, email: str) -> bool:
        return email in self._accounts

    def delete_account(self, email: str) -> bool:
        if email not in self._accounts:
            return False
        del self._accounts[email]
        self._save_accounts()
        if self.get_default_account() == email:
            self.clear_default_account()
        return True

    # === Client credentials ===

    def set_credentials(self, credentials: ClientCredentials) -> None:
        self._write_json_atomic(self.credentials_file, credentials.to_dict())

    def get_credentials(self) -> ClientCredentials | None:
        data = self._read_json_soft(self.credentials_file)
        if data is None:
            return None
        try:
            return ClientCredentials.from_dict(data)
        except KeyError:
            logger.warning("Ignoring %s: missing clientId/clientSecret", self.credentials_file.name)
            return None

    # === Default account ===

    def _load_config(self) -> dict:
        return self._read_json_soft(self.config_file) or {}

    def set_default_account(self, email: str) -> None:
        config = self._load_config()
        config["defaultAccount"] = email
        self._write_json_atomic(self.config_file, config)

    def get_default_account(self) -> str | None:
        return self._load_config().get("defaultAccount") or None

    def clear_default_account(self) -> None:
        config = self._load_config()
        config.pop("defaultAccount", None)
        self._write_json_atomic(self.config_file, config)
