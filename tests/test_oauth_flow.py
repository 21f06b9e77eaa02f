"""
Tests for the OAuth2 PKCE authorization flow.

Verifies that:
- Authorization URLs carry a fresh state, an S256 challenge and offline access
- State is checked before any token exchange
- Denied / incomplete callbacks fail with AuthorizationError
- Both transports (local server and manual paste) complete the flow
- Session secrets and the listener are torn down on every exit path
"""

import base64
import hashlib
import io
import os
import socket
import sys
import threading
import time
import urllib.error
import urllib.request
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from rich.console import Console

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from gmail_cli.errors import AuthorizationError, AuthorizationTimeout, StateMismatchError
from gmail_cli.gmail.gmail_auth import (
    MANUAL_REDIRECT_URI,
    GmailOAuthFlow,
    LocalServerTransport,
    ManualTransport,
    OAuthSession,
    parse_callback_url,
)
from gmail_cli.gmail.scopes import DEFAULT_GMAIL_SCOPES, GMAIL_READONLY_SCOPE

TOKEN_RESPONSE = {
    "access_token": "access-abc",
    "refresh_token": "refresh-xyz",
    "scope": " ".join(DEFAULT_GMAIL_SCOPES),
    "token_type": "Bearer",
    "expires_in": 3599,
}


# =====================================================================
# Fixtures
# =====================================================================

@pytest.fixture
def quiet_console():
    return Console(file=io.StringIO(), force_terminal=False)


@pytest.fixture
def flow(quiet_console):
    return GmailOAuthFlow(
        "client-123.apps.googleusercontent.com",
        "secret-456",
        scopes=list(DEFAULT_GMAIL_SCOPES),
        console=quiet_console,
        open_browser=False,
    )


@pytest.fixture
def fetch_token():
    with patch("gmail_cli.gmail.gmail_auth.Flow.fetch_token", return_value=dict(TOKEN_RESPONSE)) as mock:
        yield mock


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def _challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


# =====================================================================
# Session secrets
# =====================================================================

class TestOAuthSession:

    def test_state_is_32_hex_chars(self):
        session = OAuthSession.generate()
        assert len(session.state) == 32
        int(session.state, 16)

    def test_verifier_is_base64url_without_padding(self):
        verifier = OAuthSession.generate().code_verifier
        assert len(verifier) == 43
        assert "=" not in verifier and "+" not in verifier and "/" not in verifier

    def test_challenge_is_s256_of_verifier(self):
        session = OAuthSession.generate()
        assert session.code_challenge == _challenge(session.code_verifier)

    def test_repr_hides_secrets(self):
        session = OAuthSession.generate()
        assert session.state not in repr(session)
        assert session.code_verifier not in repr(session)


# =====================================================================
# Authorization URL
# =====================================================================

class TestAuthorizationUrl:

    def test_required_parameters(self, flow):
        url = flow.authorization_url(MANUAL_REDIRECT_URI)
        params = _query(url)

        assert params["access_type"] == "offline"
        assert params["state"] == flow.session.state
        assert params["code_challenge"] == _challenge(flow.session.code_verifier)
        assert params["code_challenge_method"] == "S256"
        assert params["redirect_uri"] == MANUAL_REDIRECT_URI
        assert params["client_id"] == "client-123.apps.googleusercontent.com"
        assert set(params["scope"].split()) == set(DEFAULT_GMAIL_SCOPES)

    def test_include_granted_scopes_false(self, flow):
        params = _query(flow.authorization_url(MANUAL_REDIRECT_URI))
        assert params["include_granted_scopes"] == "false"

    def test_prompt_consent_for_upgrade(self, quiet_console):
        flow = GmailOAuthFlow("id", "secret", prompt="consent", console=quiet_console)
        params = _query(flow.authorization_url(MANUAL_REDIRECT_URI))
        assert params["prompt"] == "consent"

    def test_no_prompt_by_default(self, flow):
        assert "prompt" not in _query(flow.authorization_url(MANUAL_REDIRECT_URI))

    def test_client_secret_not_in_url(self, flow):
        assert "secret-456" not in flow.authorization_url(MANUAL_REDIRECT_URI)

    def test_fresh_secrets_per_attempt(self, flow):
        first = _query(flow.authorization_url(MANUAL_REDIRECT_URI))
        second = _query(flow.authorization_url(MANUAL_REDIRECT_URI))

        assert first["state"] != second["state"]
        assert first["code_challenge"] != second["code_challenge"]

    def test_readonly_scopes(self, quiet_console):
        flow = GmailOAuthFlow("id", "secret", scopes=[GMAIL_READONLY_SCOPE], console=quiet_console)
        params = _query(flow.authorization_url(MANUAL_REDIRECT_URI))
        assert params["scope"] == GMAIL_READONLY_SCOPE


# =====================================================================
# Callback validation
# =====================================================================

class TestHandleCallback:

    def test_success(self, flow, fetch_token):
        flow.authorization_url(MANUAL_REDIRECT_URI)
        result = flow.handle_callback({"code": "auth-code", "state": flow.session.state})

        assert result.refresh_token == "refresh-xyz"
        assert result.access_token == "access-abc"
        assert set(result.scopes) == set(DEFAULT_GMAIL_SCOPES)
        fetch_token.assert_called_once()
        assert fetch_token.call_args.kwargs["code"] == "auth-code"
        assert fetch_token.call_args.kwargs["code_verifier"] == flow.session.code_verifier

    def test_state_mismatch_never_exchanges(self, flow, fetch_token):
        flow.authorization_url(MANUAL_REDIRECT_URI)

        with pytest.raises(StateMismatchError, match="OAuth state mismatch"):
            flow.handle_callback({"code": "auth-code", "state": "attacker-state"})
        fetch_token.assert_not_called()

    def test_missing_state_never_exchanges(self, flow, fetch_token):
        flow.authorization_url(MANUAL_REDIRECT_URI)

        with pytest.raises(StateMismatchError):
            flow.handle_callback({"code": "auth-code"})
        fetch_token.assert_not_called()

    def test_state_mismatch_is_authorization_error(self):
        assert issubclass(StateMismatchError, AuthorizationError)

    def test_error_parameter(self, flow, fetch_token):
        flow.authorization_url(MANUAL_REDIRECT_URI)

        with pytest.raises(AuthorizationError, match="access_denied"):
            flow.handle_callback({"error": "access_denied", "state": flow.session.state})
        fetch_token.assert_not_called()

    def test_missing_code(self, flow, fetch_token):
        flow.authorization_url(MANUAL_REDIRECT_URI)

        with pytest.raises(AuthorizationError, match="No authorization code"):
            flow.handle_callback({"state": flow.session.state})
        fetch_token.assert_not_called()

    def test_missing_verifier(self, flow, fetch_token):
        flow.authorization_url(MANUAL_REDIRECT_URI)
        flow.session.code_verifier = ""

        with pytest.raises(AuthorizationError, match="Missing PKCE verifier"):
            flow.handle_callback({"code": "auth-code", "state": flow.session.state})
        fetch_token.assert_not_called()

    def test_callback_without_session(self, flow, fetch_token):
        with pytest.raises(StateMismatchError):
            flow.handle_callback({"code": "auth-code", "state": "anything"})
        fetch_token.assert_not_called()

    def test_no_refresh_token(self, flow, fetch_token):
        fetch_token.return_value = {"access_token": "access-only"}
        flow.authorization_url(MANUAL_REDIRECT_URI)

        with pytest.raises(AuthorizationError, match="No refresh token"):
            flow.handle_callback({"code": "auth-code", "state": flow.session.state})

    def test_exchange_failure_wrapped(self, flow, fetch_token):
        fetch_token.side_effect = RuntimeError("invalid_grant")
        flow.authorization_url(MANUAL_REDIRECT_URI)

        with pytest.raises(AuthorizationError, match="Token exchange failed"):
            flow.handle_callback({"code": "auth-code", "state": flow.session.state})

    def test_scopes_fall_back_to_requested(self, flow, fetch_token):
        fetch_token.return_value = {"refresh_token": "r"}
        flow.authorization_url(MANUAL_REDIRECT_URI)

        result = flow.handle_callback({"code": "c", "state": flow.session.state})
        assert result.scopes == list(DEFAULT_GMAIL_SCOPES)


class TestParseCallbackUrl:

    def test_full_url(self):
        assert parse_callback_url("http://localhost:1/?code=abc&state=xyz") == {
            "code": "abc",
            "state": "xyz",
        }

    def test_bare_query(self):
        assert parse_callback_url("code=abc&state=xyz")["code"] == "abc"

    def test_garbage(self):
        assert parse_callback_url("not a url") == {}


# =====================================================================
# Manual transport
# =====================================================================

class TestManualFlow:

    def test_pasted_url_completes_flow(self, flow, fetch_token):
        def paste(*args, **kwargs):
            return f"http://localhost:1/?code=pasted-code&state={flow.session.state}"

        with patch("gmail_cli.gmail.gmail_auth.Prompt.ask", side_effect=paste):
            result = flow.authorize(manual=True)

        assert result.refresh_token == "refresh-xyz"
        assert fetch_token.call_args.kwargs["code"] == "pasted-code"

    def test_session_cleared_after_success(self, flow, fetch_token):
        with patch(
            "gmail_cli.gmail.gmail_auth.Prompt.ask",
            side_effect=lambda *a, **k: f"?code=c&state={flow.session.state}",
        ):
            flow.authorize(manual=True)

        assert flow.session is None

    def test_session_cleared_after_failure(self, flow, fetch_token):
        with patch("gmail_cli.gmail.gmail_auth.Prompt.ask", return_value="?code=c&state=wrong"):
            with pytest.raises(StateMismatchError):
                flow.authorize(manual=True)

        assert flow.session is None
        fetch_token.assert_not_called()

    def test_closed_stdin_is_authorization_error(self, flow, fetch_token):
        with patch("gmail_cli.gmail.gmail_auth.Prompt.ask", side_effect=EOFError):
            with pytest.raises(AuthorizationError, match="No redirect URL provided"):
                flow.authorize(manual=True)

        assert flow.session is None
        fetch_token.assert_not_called()

    def test_manual_uses_fixed_redirect(self, quiet_console):
        assert ManualTransport(console=quiet_console).open() == MANUAL_REDIRECT_URI

    def test_transport_closed_on_failure(self, flow):
        transport = MagicMock()
        transport.open.return_value = MANUAL_REDIRECT_URI
        transport.wait_for_callback.side_effect = AuthorizationError("boom")

        with pytest.raises(AuthorizationError):
            flow.authorize(transport=transport)
        transport.close.assert_called_once()


# =====================================================================
# Local server transport
# =====================================================================

def _fake_browser(params_for):
    """webbrowser.open replacement that follows the redirect from a thread."""
    responses = []

    def open_url(auth_url, *args, **kwargs):
        query = _query(auth_url)
        callback = query["redirect_uri"] + "?" + params_for(query)

        def visit():
            try:
                with urllib.request.urlopen(callback, timeout=5) as resp:
                    responses.append(resp.status)
            except urllib.error.HTTPError as e:
                responses.append(e.code)

        threading.Thread(target=visit, daemon=True).start()
        return True

    return open_url, responses


class TestLocalServerFlow:

    def test_callback_completes_flow(self, quiet_console, fetch_token):
        flow = GmailOAuthFlow("id", "secret", console=quiet_console, timeout=10)
        open_url, responses = _fake_browser(lambda q: f"code=browser-code&state={q['state']}")
        transport = LocalServerTransport(timeout=10, console=quiet_console)

        with patch("gmail_cli.gmail.gmail_auth.webbrowser.open", side_effect=open_url):
            result = flow.authorize(transport=transport)

        assert result.refresh_token == "refresh-xyz"
        assert fetch_token.call_args.kwargs["code"] == "browser-code"
        assert not transport.is_open
        assert flow.session is None

    def test_redirect_uri_is_localhost_ephemeral_port(self, quiet_console):
        transport = LocalServerTransport(timeout=1, console=quiet_console, open_browser=False)
        try:
            redirect_uri = transport.open()
            parsed = urlparse(redirect_uri)
            assert parsed.hostname == "localhost"
            assert parsed.port > 0
            assert parsed.path == "/"
        finally:
            transport.close()
        assert not transport.is_open

    def test_state_mismatch_over_http(self, quiet_console, fetch_token):
        flow = GmailOAuthFlow("id", "secret", console=quiet_console)
        open_url, responses = _fake_browser(lambda q: "code=browser-code&state=forged")
        transport = LocalServerTransport(timeout=10, console=quiet_console)

        with patch("gmail_cli.gmail.gmail_auth.webbrowser.open", side_effect=open_url):
            with pytest.raises(StateMismatchError):
                flow.authorize(transport=transport)

        fetch_token.assert_not_called()
        assert not transport.is_open

    def test_timeout_closes_listener(self, quiet_console, fetch_token):
        flow = GmailOAuthFlow("id", "secret", console=quiet_console)
        transport = LocalServerTransport(timeout=0.3, console=quiet_console, open_browser=False)

        with pytest.raises(AuthorizationTimeout):
            flow.authorize(transport=transport)

        assert not transport.is_open
        assert flow.session is None
        fetch_token.assert_not_called()

    def test_idle_connection_cannot_outlast_timeout(self, quiet_console, fetch_token):
        flow = GmailOAuthFlow("id", "secret", console=quiet_console)
        transport = LocalServerTransport(timeout=1.0, console=quiet_console)
        idle = []

        def connect_and_say_nothing(url, *args, **kwargs):
            port = urlparse(_query(url)["redirect_uri"]).port
            idle.append(socket.create_connection(("localhost", port)))
            return True

        started = time.monotonic()
        try:
            with patch(
                "gmail_cli.gmail.gmail_auth.webbrowser.open", side_effect=connect_and_say_nothing
            ):
                with pytest.raises(AuthorizationTimeout):
                    flow.authorize(transport=transport)
            elapsed = time.monotonic() - started
        finally:
            for sock in idle:
                sock.close()

        assert idle
        assert elapsed < 4
        assert not transport.is_open
        fetch_token.assert_not_called()

    def test_other_paths_404(self, quiet_console):
        transport = LocalServerTransport(timeout=1, console=quiet_console, open_browser=False)
        start_response = MagicMock()

        body = transport._app({"PATH_INFO": "/favicon.ico", "QUERY_STRING": ""}, start_response)

        assert start_response.call_args.args[0].startswith("404")
        assert body == [b"Not found"]

    def test_error_page_is_escaped(self, quiet_console):
        transport = LocalServerTransport(timeout=1, console=quiet_console, open_browser=False)
        transport._handler = MagicMock(side_effect=AuthorizationError("<script>alert(1)</script>"))
        start_response = MagicMock()

        body = transport._app({"PATH_INFO": "/", "QUERY_STRING": "error=x"}, start_response)

        assert start_response.call_args.args[0].startswith("400")
        assert b"<script>" not in body[0]
        assert b"&lt;script&gt;" in body[0]
