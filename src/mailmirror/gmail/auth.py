"""Google OAuth2 for linking mailboxes.

Builds consent URLs bound to a signed, short-lived state token, trades
authorization codes for tokens, refreshes access tokens and looks up the
Google identity behind an access token.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any
from urllib.parse import urlencode

import httpx

from mailmirror.logging import get_logger

log = get_logger("mailmirror.gmail.auth")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # nosec B105
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

DEFAULT_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
]

# Seconds a consent round-trip may take.
STATE_TOKEN_EXPIRY = 600


class OAuthError(Exception):
    """Raised when OAuth2 operations fail."""


class AuthenticationError(OAuthError):
    """No usable credential exists; the user must (re)authorize."""


class TokenRefreshError(OAuthError):
    """The provider rejected or failed a refresh-token grant.

    Retryable with backoff; repeated failure means re-authorization.
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _b64_encode(data: str) -> str:
    return base64.urlsafe_b64encode(data.encode("utf-8")).rstrip(b"=").decode("ascii")


def _b64_decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


class StateSigner:
    """Issues and checks ``<payload>.<issued_at>.<hmac>`` state tokens."""

    def __init__(self, secret: str, *, max_age: int = STATE_TOKEN_EXPIRY) -> None:
        self._key = secret.encode("utf-8")
        self._max_age = max_age

    def signature(self, message: str) -> str:
        return hmac.new(self._key, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, user_id: str) -> str:
        body = f"{_b64_encode(json.dumps({'user_id': user_id}))}.{int(time.time())}"
        return f"{body}.{self.signature(body)}"

    def verify(self, token: str) -> str:
        """Return the user id carried by ``token``.

        Raises:
            OAuthError: Malformed, forged or stale token.
        """
        pieces = token.split(".")
        if len(pieces) != 3:
            raise OAuthError("Invalid state token format")
        encoded, issued_at, mac = pieces

        if not hmac.compare_digest(mac, self.signature(f"{encoded}.{issued_at}")):
            raise OAuthError("State token signature mismatch")

        try:
            age = time.time() - int(issued_at)
            user_id = str(json.loads(_b64_decode(encoded))["user_id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise OAuthError(f"Failed to validate state token: {exc}") from exc

        if age > self._max_age:
            raise OAuthError("State token expired")
        return user_id


class GmailAuth:
    """OAuth2 client for the Google consent and token endpoints."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        state_secret: str = "",  # nosec B107
        timeout: float = 30.0,
    ) -> None:
        for name, value in (
            ("client_id", client_id),
            ("client_secret", client_secret),
            ("redirect_uri", redirect_uri),
        ):
            if not value:
                raise ValueError(f"{name} is required")

        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._timeout = timeout
        self._signer = StateSigner(state_secret or client_secret)
        log.info("gmail_auth_initialized", redirect_uri=redirect_uri)

    def generate_auth_url(
        self,
        user_id: str,
        *,
        scopes: list[str] | None = None,
    ) -> tuple[str, str]:
        """Return ``(consent_url, state)`` for ``user_id``.

        The URL asks for offline access with a forced consent prompt so
        Google always hands back a refresh token.
        """
        state = self._signer.issue(user_id)
        query = urlencode(
            {
                "client_id": self._client_id,
                "redirect_uri": self._redirect_uri,
                "response_type": "code",
                "scope": " ".join(scopes or DEFAULT_SCOPES),
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
        )
        log.info("auth_url_generated", user_id=user_id)
        return f"{GOOGLE_AUTH_URL}?{query}", state

    def validate_state_token(self, state: str) -> str:
        user_id = self._signer.verify(state)
        log.info("state_token_validated", user_id=user_id)
        return user_id

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Trade an authorization code for an access/refresh token pair.

        Raises:
            OAuthError: Transport failure, HTTP error or an ``error`` body.
        """
        result = await self._call(
            "Token exchange",
            OAuthError,
            "POST",
            GOOGLE_TOKEN_URL,
            data=self._grant(
                grant_type="authorization_code",
                code=code,
                redirect_uri=self._redirect_uri,
            ),
        )
        if "error" in result:
            raise OAuthError(
                f"Token exchange error: {result['error']} - {result.get('error_description', '')}"
            )
        log.info("code_exchanged_for_tokens")
        return result

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Redeem ``refresh_token`` for a new access token.

        The result includes ``refresh_token`` only when Google rotates it.

        Raises:
            TokenRefreshError: With ``status`` set when Google answered.
        """
        result = await self._call(
            "Token refresh",
            TokenRefreshError,
            "POST",
            GOOGLE_TOKEN_URL,
            data=self._grant(grant_type="refresh_token", refresh_token=refresh_token),
        )
        if "error" in result or not result.get("access_token"):
            raise TokenRefreshError(
                f"Token refresh error: {result.get('error', 'missing access_token')}"
                f" - {result.get('error_description', '')}"
            )
        log.info("access_token_refreshed")
        return result

    async def get_user_email(self, access_token: str) -> tuple[str, str]:
        """Return ``(provider_account_id, email)`` for an access token.

        Google's numeric id is preferred; the address stands in when the
        id is absent.
        """
        profile = await self._call(
            "Userinfo",
            OAuthError,
            "GET",
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        email_addr: str = profile.get("email", "")
        if not email_addr:
            raise OAuthError("No email in userinfo response")
        return str(profile.get("id") or email_addr), email_addr

    def _grant(self, **fields: str) -> dict[str, str]:
        return {"client_id": self._client_id, "client_secret": self._client_secret, **fields}

    async def _call(
        self,
        what: str,
        error_cls: type[OAuthError],
        method: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                if method == "GET":
                    response = await client.get(url, **kwargs)
                else:
                    response = await client.post(url, **kwargs)
                response.raise_for_status()
                body: dict[str, Any] = response.json()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                message = f"{what} HTTP error {status}: {exc.response.text}"
                if error_cls is TokenRefreshError:
                    raise TokenRefreshError(message, status=status) from exc
                raise error_cls(message) from exc
            except httpx.RequestError as exc:
                raise error_cls(f"{what} request failed: {exc}") from exc
        return body
