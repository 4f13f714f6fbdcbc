"""HTTP API for triggering and inspecting mailbox syncs.

Routes:
    GET    /health                          liveness, no auth
    POST   /api/gmail/sync                  run a sync for one mailbox
    GET    /api/gmail/sync                  sync status for one mailbox
    GET    /api/gmail/messages              mirrored messages, newest first
    GET    /api/gmail/threads               mirrored threads, newest first
    GET    /api/gmail/cron                  scheduled sync of every account (Bearer cron secret)
    GET    /api/auth/link/google            start linking a Google account
    GET    /api/auth/link/google/callback   OAuth callback (authenticated by the signed state)
    DELETE /api/auth/unlink                 remove a linked account

Everything except the health check, the cron route and the OAuth callback
requires the ``X-API-Secret`` header when an API secret is configured.
"""

from __future__ import annotations

import hmac
import json
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from aiohttp import web

from mailmirror.gmail.auth import OAuthError
from mailmirror.gmail.credentials import (
    AccountLinkedElsewhereError,
    CredentialNotFoundError,
    LastCredentialError,
    link_account,
)
from mailmirror.gmail.scheduler import sync_all_accounts
from mailmirror.gmail.storage import MailboxStore
from mailmirror.gmail.sync import SyncInProgressError
from mailmirror.logging import get_logger

if TYPE_CHECKING:
    from mailmirror.services import Services

log = get_logger("mailmirror.server")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_PUBLIC_PATHS = frozenset({"/health", "/api/gmail/cron", "/api/auth/link/google/callback"})
_MAX_PAGE_LIMIT = 200


class MirrorServer:
    """aiohttp server exposing the sync engine."""

    def __init__(
        self,
        services: Services,
        *,
        host: str = "0.0.0.0",  # nosec B104
        port: int = 8080,
        api_secret: str = "",
        cron_secret: str = "",
    ) -> None:
        self._services = services
        self._host = host
        self._port = port
        self._api_secret = api_secret
        self._cron_secret = cron_secret
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _check_auth(self, request: web.Request) -> bool:
        if not self._api_secret:
            return True
        provided = request.headers.get("X-API-Secret", "")
        return hmac.compare_digest(provided, self._api_secret)

    def _check_cron(self, request: web.Request) -> bool:
        if not self._cron_secret:
            return False
        provided = request.headers.get("Authorization", "")
        return hmac.compare_digest(provided, f"Bearer {self._cron_secret}")

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.path not in _PUBLIC_PATHS and not self._check_auth(request):
            log.warning("unauthorized_request", path=request.path)
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    # ------------------------------------------------------------------
    # App lifecycle
    # ------------------------------------------------------------------

    def create_app(self) -> web.Application:
        """Create the aiohttp application with all routes."""
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_get("/health", self.handle_health)
        app.router.add_post("/api/gmail/sync", self.handle_sync)
        app.router.add_get("/api/gmail/sync", self.handle_sync_status)
        app.router.add_get("/api/gmail/messages", self.handle_messages)
        app.router.add_get("/api/gmail/threads", self.handle_threads)
        app.router.add_get("/api/gmail/cron", self.handle_cron)
        app.router.add_get("/api/auth/link/google", self.handle_link_start)
        app.router.add_get("/api/auth/link/google/callback", self.handle_link_callback)
        app.router.add_delete("/api/auth/unlink", self.handle_unlink)
        self._app = app
        return app

    async def start(self) -> None:
        """Start serving on the configured host and port."""
        app = self._app or self.create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        log.info("server_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            log.info("server_stopped")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def handle_sync(self, request: web.Request) -> web.Response:
        """Run a full or incremental sync for one mailbox."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON"}, status=400)

        user_id = body.get("user_id")
        account_email = body.get("account_email")
        if not user_id or not account_email:
            return web.json_response(
                {"error": "user_id and account_email are required"}, status=400
            )

        max_messages = body.get("max_messages", self._services.settings.sync_default_limit)
        if not isinstance(max_messages, int) or isinstance(max_messages, bool) or max_messages < 1:
            return web.json_response(
                {"error": "max_messages must be a positive integer"}, status=400
            )

        engine = self._services.engine_for(str(user_id), str(account_email))
        try:
            if body.get("use_incremental"):
                result = await engine.incremental_sync(max_messages)
            else:
                result = await engine.sync_messages(
                    max_messages,
                    query=body.get("query") or None,
                    is_initial_sync=bool(body.get("is_initial_sync", False)),
                )
        except SyncInProgressError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except OAuthError as exc:
            log.warning("sync_authorization_failed", user_id=user_id, error=str(exc))
            return web.json_response(
                {"error": "Gmail authorization required", "details": str(exc)}, status=401
            )
        except Exception as exc:
            log.exception("sync_request_failed", user_id=user_id)
            return web.json_response({"error": "Sync failed", "details": str(exc)}, status=500)

        return web.json_response({"success": True, **result.to_dict()})

    async def handle_sync_status(self, request: web.Request) -> web.Response:
        mailbox = self._mailbox_from_query(request)
        if mailbox is None:
            return web.json_response(
                {"error": "user_id and account_email are required"}, status=400
            )
        user_id, account_email = mailbox
        engine = self._services.engine_for(user_id, account_email)
        return web.json_response(await engine.get_status())

    async def handle_messages(self, request: web.Request) -> web.Response:
        return await self._list(request, "messages")

    async def handle_threads(self, request: web.Request) -> web.Response:
        return await self._list(request, "threads")

    async def handle_cron(self, request: web.Request) -> web.Response:
        """Scheduled sync of every linked Google account."""
        if not self._check_cron(request):
            return web.json_response({"error": "Unauthorized"}, status=401)

        reports = await sync_all_accounts(
            self._services.credentials,
            self._services.engine_for_credential,
            max_messages=self._services.settings.sync_default_limit,
        )
        return web.json_response(
            {
                "success": True,
                "accounts": len(reports),
                "failed": sum(1 for r in reports if r.status == "failed"),
                "results": [r.to_dict() for r in reports],
            }
        )

    async def handle_link_start(self, request: web.Request) -> web.Response:
        user_id = request.query.get("user_id")
        if not user_id:
            return web.json_response({"error": "user_id is required"}, status=400)
        url, _state = self._services.auth.generate_auth_url(user_id)
        return web.json_response({"url": url})

    async def handle_link_callback(self, request: web.Request) -> web.Response:
        error = request.query.get("error")
        if error:
            return web.json_response({"error": f"Authorization denied: {error}"}, status=400)

        code = request.query.get("code")
        state = request.query.get("state")
        if not code or not state:
            return web.json_response({"error": "code and state are required"}, status=400)

        try:
            user_id = self._services.auth.validate_state_token(state)
            credential = await link_account(
                self._services.auth, self._services.credentials, user_id, code
            )
        except AccountLinkedElsewhereError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except OAuthError as exc:
            log.warning("account_link_failed", error=str(exc))
            return web.json_response({"error": str(exc)}, status=400)

        return web.json_response({"success": True, "account": credential.to_dict()})

    async def handle_unlink(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON"}, status=400)

        user_id = body.get("user_id")
        provider = body.get("provider")
        provider_account_id = body.get("provider_account_id")
        if not user_id or not provider or not provider_account_id:
            return web.json_response(
                {"error": "user_id, provider and provider_account_id are required"}, status=400
            )

        try:
            await self._services.credentials.unlink(
                str(user_id), str(provider), str(provider_account_id)
            )
        except LastCredentialError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except CredentialNotFoundError:
            return web.json_response({"error": "Account not found"}, status=404)

        return web.json_response({"success": True})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _mailbox_from_query(request: web.Request) -> tuple[str, str] | None:
        user_id = request.query.get("user_id")
        account_email = request.query.get("account_email")
        if not user_id or not account_email:
            return None
        return user_id, account_email

    async def _list(self, request: web.Request, kind: str) -> web.Response:
        mailbox = self._mailbox_from_query(request)
        if mailbox is None:
            return web.json_response(
                {"error": "user_id and account_email are required"}, status=400
            )
        try:
            limit = min(int(request.query.get("limit", "50")), _MAX_PAGE_LIMIT)
            offset = int(request.query.get("offset", "0"))
        except ValueError:
            return web.json_response({"error": "limit and offset must be integers"}, status=400)
        if limit < 1 or offset < 0:
            return web.json_response({"error": "limit and offset out of range"}, status=400)

        store = MailboxStore(self._services.pool, *mailbox)
        if kind == "messages":
            rows = await store.list_messages(limit=limit, offset=offset)
        else:
            rows = await store.list_threads(limit=limit, offset=offset)
        return web.json_response({kind: rows}, dumps=_dumps)


def create_app(
    services: Services, *, api_secret: str = "", cron_secret: str = ""
) -> web.Application:
    """Build the application without binding a socket."""
    return MirrorServer(services, api_secret=api_secret, cron_secret=cron_secret).create_app()


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)
