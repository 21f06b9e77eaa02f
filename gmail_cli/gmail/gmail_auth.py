"""
Gmail OAuth2 authorization-code flow with PKCE.

Handles the full authorization dance for adding or upgrading an account:
- Fresh anti-CSRF state token and PKCE verifier per attempt, never reused
- Authorization URL built with google_auth_oauthlib (offline access, S256)
- Two callback transports sharing everything else:
    LocalServerTransport  ephemeral listener on localhost, opens a browser
    ManualTransport       headless; the user pastes the redirect URL
- State is checked on every callback; there is no way to skip it
- Listener, timer and session secrets are torn down on every exit path

The client secret and refresh token only ever go to the token endpoint and
back to the caller. Nothing here logs them.
"""

import base64
import hashlib
import html
import logging
import os
import secrets
import time
import webbrowser
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from google_auth_oauthlib.flow import Flow
from rich.console import Console
from rich.prompt import Prompt

from ..config.settings import DEFAULT_AUTH_TIMEOUT
from ..errors import AuthorizationError, AuthorizationTimeout, StateMismatchError
from .scopes import DEFAULT_GMAIL_SCOPES

logger = logging.getLogger(__name__)

# Google reorders scopes and may echo back previously granted ones; without
# this oauthlib raises on the token response instead of returning it.
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"

# Manual mode redirects somewhere that will not load; the user copies the URL
MANUAL_REDIRECT_URI = "http://localhost:1"
CALLBACK_PATH = "/"


def _base64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


@dataclass
class OAuthSession:
    """Per-attempt secrets. Regenerated for every authorization URL."""

    state: str
    code_verifier: str

    @classmethod
    def generate(cls) -> "OAuthSession":
        return cls(
            state=secrets.token_hex(16),
            code_verifier=_base64url(secrets.token_bytes(32)),
        )

    @property
    def code_challenge(self) -> str:
        return _base64url(hashlib.sha256(self.code_verifier.encode("ascii")).digest())

    def __repr__(self) -> str:
        return "OAuthSession(state='***', code_verifier='***')"


@dataclass
class AuthorizationResult:
    refresh_token: str
    scopes: list[str]
    access_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"AuthorizationResult(refresh_token='***', scopes={self.scopes!r})"


CallbackHandler = Callable[[dict[str, str]], AuthorizationResult]


def parse_callback_url(value: str) -> dict[str, str]:
    """Query parameters from a pasted redirect URL (or a bare query string)."""
    value = value.strip()
    query = urlparse(value).query
    if not query and "=" in value:
        query = value.lstrip("?")
    return {k: v[0] for k, v in parse_qs(query, keep_blank_values=True).items()}


class CallbackTransport:
    """How the authorization code gets back to us."""

    def open(self) -> str:
        """Prepare to receive the callback and return the redirect URI."""
        raise NotImplementedError

    def wait_for_callback(self, auth_url: str, handle: CallbackHandler) -> AuthorizationResult:
        """Show auth_url, wait for the callback, and pass its params to handle."""
        raise NotImplementedError

    def close(self) -> None:
        """Release anything open() acquired. Safe to call more than once."""


class _CallbackServer(WSGIServer):
    # Per-connection read timeout; an idle client must not outlive the deadline
    request_timeout: float | None = None


class _QuietRequestHandler(WSGIRequestHandler):
    def setup(self):
        self.timeout = self.server.request_timeout
        super().setup()

    def handle(self):
        try:
            super().handle()
        except TimeoutError:
            logger.debug("Callback connection idle past the deadline; dropped")

    def log_message(self, format, *args):
        # Request lines carry the authorization code
        logger.debug("Callback server handled a request")


class LocalServerTransport(CallbackTransport):
    """Ephemeral localhost listener on an OS-assigned port, single callback."""

    def __init__(
        self,
        timeout: float = DEFAULT_AUTH_TIMEOUT,
        console: Console | None = None,
        open_browser: bool = True,
        host: str = "localhost",
    ) -> None:
        self.timeout = timeout
        self.console = console or Console(stderr=True)
        self.open_browser = open_browser
        self.host = host
        self._server: WSGIServer | None = None
        self._handler: CallbackHandler | None = None
        self._result: AuthorizationResult | None = None
        self._error: Exception | None = None

    @property
    def is_open(self) -> bool:
        return self._server is not None

    def open(self) -> str:
        try:
            self._server = make_server(
                self.host,
                0,
                self._app,
                server_class=_CallbackServer,
                handler_class=_QuietRequestHandler,
            )
        except OSError as e:
            raise AuthorizationError(f"Could not start local callback server: {e}") from e
        port = self._server.server_port
        logger.debug("Callback server listening on port %d", port)
        return f"http://{self.host}:{port}{CALLBACK_PATH}"

    def wait_for_callback(self, auth_url: str, handle: CallbackHandler) -> AuthorizationResult:
        if self._server is None:
            raise AuthorizationError("Callback server is not running")
        self._handler = handle
        self._result = None
        self._error = None

        self.console.print("Opening browser for Gmail authorization...")
        self.console.print("If the browser doesn't open, visit this URL:")
        self.console.print(auth_url, markup=False, highlight=False, soft_wrap=True)
        if self.open_browser:
            try:
                webbrowser.open(auth_url, new=1, autoraise=True)
            except webbrowser.Error as e:
                logger.info("Could not open a browser: %s", e)

        deadline = time.monotonic() + self.timeout
        while self._result is None and self._error is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Authorization timed out after %g seconds", self.timeout)
                raise AuthorizationTimeout(
                    f"Authorization timed out after {self.timeout:g} seconds"
                )
            self._server.timeout = remaining
            self._server.request_timeout = remaining
            self._server.handle_request()

        if self._error is not None:
            if isinstance(self._error, AuthorizationError):
                raise self._error
            raise AuthorizationError(str(self._error)) from self._error
        return self._result

    def close(self) -> None:
        if self._server is not None:
            self._server.server_close()
            self._server = None
            logger.debug("Callback server closed")
        self._handler = None

    def _app(self, environ, start_response):
        if environ.get("PATH_INFO", "") != CALLBACK_PATH or self._handler is None:
            start_response("404 Not Found", [("Content-Type", "text/plain")])
            return [b"Not found"]

        params = parse_callback_url("?" + environ.get("QUERY_STRING", ""))
        try:
            self._result = self._handler(params)
            status, title, message = "200 OK", "Success!", "You can close this window."
        except AuthorizationError as e:
            self._error = e
            status, title, message = "400 Bad Request", "Authorization failed", str(e)
        except Exception as e:
            self._error = e
            status, title, message = "500 Internal Server Error", "Error", str(e)

        page = (
            f"<html><body><h1>{html.escape(title)}</h1>"
            f"<p>{html.escape(message)}</p></body></html>"
        )
        start_response(status, [("Content-Type", "text/html; charset=utf-8")])
        return [page.encode("utf-8")]


class ManualTransport(CallbackTransport):
    """Headless flow: print the URL, read the redirect URL back from stdin."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def open(self) -> str:
        return MANUAL_REDIRECT_URI

    def wait_for_callback(self, auth_url: str, handle: CallbackHandler) -> AuthorizationResult:
        self.console.print("Visit this URL to authorize:")
        self.console.print(auth_url, markup=False, highlight=False, soft_wrap=True)
        self.console.print()
        self.console.print("After authorizing, you'll be redirected to a page that won't load.")
        self.console.print("Copy the URL from your browser's address bar and paste it here.")
        self.console.print()
        try:
            pasted = Prompt.ask("Paste redirect URL", console=self.console)
        except EOFError as e:
            raise AuthorizationError("No redirect URL provided") from e
        return handle(parse_callback_url(pasted or ""))


class GmailOAuthFlow:
    """One authorization attempt at a time; each attempt gets fresh secrets."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
        include_granted_scopes: bool = False,
        prompt: str | None = None,
        timeout: float = DEFAULT_AUTH_TIMEOUT,
        console: Console | None = None,
        open_browser: bool = True,
    ) -> None:
        self.client_id = client_id
        self._client_secret = client_secret
        self.scopes = list(scopes) if scopes else list(DEFAULT_GMAIL_SCOPES)
        self.include_granted_scopes = include_granted_scopes
        self.prompt = prompt
        self.timeout = timeout
        self.console = console
        self.open_browser = open_browser
        self.session: OAuthSession | None = None
        self._flow: Flow | None = None

    def authorize(
        self,
        manual: bool = False,
        transport: CallbackTransport | None = None,
    ) -> AuthorizationResult:
        """
        Run one authorization attempt end to end.

        Returns:
            AuthorizationResult with the refresh token and granted scopes

        Raises:
            AuthorizationError: denied, state mismatch, missing verifier,
                timeout, failed exchange or no refresh token
        """
        if transport is None:
            if manual:
                transport = ManualTransport(console=self.console)
            else:
                transport = LocalServerTransport(
                    timeout=self.timeout,
                    console=self.console,
                    open_browser=self.open_browser,
                )

        try:
            redirect_uri = transport.open()
            auth_url = self.authorization_url(redirect_uri)
            result = transport.wait_for_callback(auth_url, self.handle_callback)
            logger.info("Authorization succeeded (%d scope(s) granted)", len(result.scopes))
            return result
        finally:
            transport.close()
            self._clear_session()

    def authorization_url(self, redirect_uri: str) -> str:
        """Start a new session and build the URL the user must visit."""
        self.session = OAuthSession.generate()
        self._flow = Flow.from_client_config(
            self._client_config(),
            scopes=self.scopes,
            redirect_uri=redirect_uri,
            code_verifier=self.session.code_verifier,
            autogenerate_code_verifier=False,
        )

        params = {
            "access_type": "offline",
            "state": self.session.state,
            "code_challenge": self.session.code_challenge,
            "code_challenge_method": "S256",
            "include_granted_scopes": "true" if self.include_granted_scopes else "false",
        }
        if self.prompt:
            params["prompt"] = self.prompt

        url, _ = self._flow.authorization_url(**params)
        return url

    def handle_callback(self, params: dict[str, str]) -> AuthorizationResult:
        """Validate the callback parameters and exchange the code for tokens."""
        if params.get("error"):
            raise AuthorizationError(f"Authorization cancelled or denied: {params['error']}")

        code = params.get("code")
        if not code:
            raise AuthorizationError("No authorization code found in callback")

        if not self._is_valid_state(params.get("state")):
            logger.warning("Rejected callback with mismatched OAuth state")
            raise StateMismatchError("OAuth state mismatch")

        if self.session is None or not self.session.code_verifier or self._flow is None:
            raise AuthorizationError("Missing PKCE verifier")

        token = self._exchange_code(code)

        refresh_token = token.get("refresh_token")
        if not refresh_token:
            raise AuthorizationError("No refresh token received")

        return AuthorizationResult(
            refresh_token=refresh_token,
            scopes=_granted_scopes(token, self.scopes),
            access_token=token.get("access_token"),
        )

    def _exchange_code(self, code: str) -> dict:
        try:
            return dict(
                self._flow.fetch_token(code=code, code_verifier=self.session.code_verifier)
            )
        except Exception as e:
            raise AuthorizationError(f"Token exchange failed: {e}") from e

    def _is_valid_state(self, state: str | None) -> bool:
        if not state or self.session is None or not self.session.state:
            return False
        return secrets.compare_digest(state.encode("utf-8"), self.session.state.encode("utf-8"))

    def _client_config(self) -> dict:
        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
            }
        }

    def _clear_session(self) -> None:
        self.session = None
        self._flow = None


def _granted_scopes(token: dict, requested: list[str]) -> list[str]:
    """Scopes from the token response; the requested ones if it names none."""
    scope = token.get("scope")
    if isinstance(scope, str):
        granted = scope.split()
    elif scope:
        granted = list(scope)
    else:
        granted = []
    return granted or list(requested)
