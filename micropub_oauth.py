"""
micropub_oauth.py — authorization codes, token exchange and bearer checks.

Flow:
  /auth   — client gets a code, bound to the host of its client_id.
            Re-authorizing the same client returns the same code.
  /token  — code is checked against the stored record and exchanged for
            an opaque access token, which replaces any earlier one.
  bearer  — a presented token is valid if any stored record carries it.

State lives only in the AuthorizationStore; the provider holds nothing
between requests.
"""

import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

from micropub_errors import InvalidAuthCode, InvalidClient
from micropub_models import TokenOutput
from micropub_store import AuthorizationRecord, AuthorizationStore, AuthToken, is_usable_key

logger = logging.getLogger("micropub-oauth")
audit_logger = logging.getLogger("micropub-audit")

ACCESS_TOKEN_PARAM = "access_token"


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


def _new_secret() -> str:
    return secrets.token_urlsafe(32)


def resolve_client_key(client_id: str | None) -> str:
    """Map a client_id URL to its storage key (the URL host)."""
    if not client_id:
        raise InvalidClient("client_id is required")
    try:
        host = urlsplit(client_id).hostname
    except ValueError:
        raise InvalidClient(f"client_id is not a valid URL: {client_id!r}")
    if not host or not is_usable_key(host):
        raise InvalidClient(f"client_id has no usable host: {client_id!r}")
    return host


def append_query(url: str, **params: str | None) -> str | None:
    """Append params to url's query string.

    None unless url is absolute (scheme and host) and free of whitespace
    and control characters.
    """
    if any(c.isspace() or ord(c) < 0x20 or ord(c) == 0x7f for c in url):
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    extra = urlencode({k: v for k, v in params.items() if v is not None})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit(parts._replace(query=query))


class CredentialSource(Enum):
    HEADER = "header"
    BODY_FIELD = "body_field"


@dataclass(frozen=True)
class Credential:
    source: CredentialSource
    token: str


def credential_from_header(value: str) -> Credential | None:
    """Last whitespace-separated segment of an Authorization header."""
    parts = value.split()
    if not parts:
        return None
    return Credential(CredentialSource.HEADER, parts[-1])


class MicropubAuthProvider:
    """Issues codes and tokens and verifies bearer credentials."""

    def __init__(self, store: AuthorizationStore):
        self.store = store

    # --- /auth ---

    def authorize(
        self,
        client_id: str | None,
        redirect_uri: str,
        state: str | None = None,
        scope: str | None = None,
        me: str | None = None,
    ) -> str | None:
        """Issue (or reuse) the client's code and build the redirect URL.

        Returns None when redirect_uri can't be parsed; the code is still
        persisted in that case.
        """
        key = resolve_client_key(client_id)
        if self.store.exists(key):
            code = self.store.load(key).auth_code
            _audit("authorize_code_reused", client_id=key, scope=scope)
        else:
            code = _new_secret()
            record = AuthorizationRecord(client_id=key, auth_code=code, me=me)
            self.store.save(key, record)
            _audit("authorize_code_issued", client_id=key, scope=scope)
            logger.info("authorize: new code for %s", key)

        redirect = append_query(redirect_uri, code=code, state=state)
        if redirect is None:
            logger.warning("authorize: unparseable redirect_uri for %s: %r", key, redirect_uri)
        return redirect

    # --- /token ---

    def exchange_token(
        self,
        client_id: str | None,
        code: str | None,
        me: str,
        scope: str | None = None,
    ) -> TokenOutput:
        key = resolve_client_key(client_id)
        record = self.store.load(key)

        if not code or not hmac.compare_digest(code.encode(), record.auth_code.encode()):
            _audit("token_rejected", client_id=key, reason="code_mismatch")
            raise InvalidAuthCode()

        token = AuthToken(value=_new_secret(), date=datetime.now(timezone.utc))
        record.auth_token = token
        self.store.save(key, record)
        _audit("token_issued", client_id=key, scope=scope)
        logger.info("token_issued: client=%s access=%s...", key, token.value[:8])

        return TokenOutput(access_token=token.value, scope=scope, me=me)

    # --- bearer ---

    def issued_tokens(self) -> set[str]:
        return {
            record.auth_token.value
            for record in self.store.list_all()
            if record.auth_token and record.auth_token.value
        }

    def authenticate(self, token: str | None) -> bool:
        if not token:
            return False
        presented = token.encode()
        # Compare against every token; no early exit.
        matched = False
        for known in self.issued_tokens():
            if hmac.compare_digest(presented, known.encode()):
                matched = True
        if not matched:
            logger.info("authenticate: rejected token=%s...", token[:8])
        return matched
