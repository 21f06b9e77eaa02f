"""
Data models for the local secret store and audit trail.

On-disk keys are camelCase so existing ~/.gmail-cli files stay readable.
AuditEntry never carries message content or secrets.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OAuth2Bundle:
    client_id: str
    client_secret: str
    refresh_token: str
    access_token: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
            "refreshToken": self.refresh_token,
        }
        if self.access_token:
            d["accessToken"] = self.access_token
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "OAuth2Bundle":
        return cls(
            client_id=data["clientId"],
            client_secret=data["clientSecret"],
            refresh_token=data["refreshToken"],
            access_token=data.get("accessToken"),
        )

    def __repr__(self) -> str:
        # Secrets stay out of tracebacks and log lines
        return f"OAuth2Bundle(client_id={self.client_id!r}, client_secret='***', refresh_token='***')"


@dataclass
class Account:
    email: str
    oauth2: OAuth2Bundle
    # None means "unknown" (legacy record predating scope tracking)
    scopes: Optional[list[str]] = None

    def to_dict(self) -> dict:
        d: dict = {"email": self.email}
        if self.scopes is not None:
            d["scopes"] = list(self.scopes)
        d["oauth2"] = self.oauth2.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Account":
        scopes = data.get("scopes")
        return cls(
            email=data["email"],
            oauth2=OAuth2Bundle.from_dict(data["oauth2"]),
            scopes=list(scopes) if scopes is not None else None,
        )


@dataclass
class ClientCredentials:
    client_id: str
    client_secret: str

    def to_dict(self) -> dict:
        return {"clientId": self.client_id, "clientSecret": self.client_secret}

    @classmethod
    def from_dict(cls, data: dict) -> "ClientCredentials":
        return cls(client_id=data["clientId"], client_secret=data["clientSecret"])

    @classmethod
    def from_google_client_secrets(cls, data: dict) -> "ClientCredentials":
        """Read the client_secret*.json downloaded from Google Cloud Console."""
        section = data.get("installed") or data.get("web")
        if not isinstance(section, dict):
            raise ValueError("Invalid credentials file: expected an 'installed' or 'web' section")
        try:
            return cls(client_id=section["client_id"], client_secret=section["client_secret"])
        except KeyError as e:
            raise ValueError(f"Invalid credentials file: missing {e.args[0]}") from e

    def __repr__(self) -> str:
        return f"ClientCredentials(client_id={self.client_id!r}, client_secret='***')"


@dataclass
class AuditEntry:
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_now)
    action: str = ""
    account: str = ""
    details: str = ""
    level: str = "INFO"  # INFO, WARNING, CRITICAL
    entry_hash: str = ""
    previous_hash: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "account": self.account,
            "details": self.details,
            "level": self.level,
            "entry_hash": self.entry_hash,
            "previous_hash": self.previous_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEntry":
        d = dict(data)
        val = d.get("timestamp")
        if isinstance(val, str):
            d["timestamp"] = datetime.fromisoformat(val)
        return cls(**d)
