"""Tests for the mailmirror command line interface."""

import base64
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mailmirror.cli import build_parser, main
from mailmirror.gmail.auth import AuthenticationError, TokenRefreshError
from mailmirror.gmail.client import Profile
from mailmirror.gmail.credentials import Credential, MigrationStats
from mailmirror.gmail.sync import SyncInProgressError, SyncResult
from mailmirror.services import ConfigurationError


def _mock_settings() -> MagicMock:
    settings = MagicMock()
    settings.sync_default_limit = 100
    return settings


def _credential(user_id: str = "user-1", email: str | None = "me@example.com") -> Credential:
    return Credential(user_id, "google", f"g-{user_id}", email=email)


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.account_email = "me@example.com"
    engine.incremental_sync = AsyncMock(
        return_value=SyncResult(synced=2, updated=1, history_id="500", sync_type="incremental")
    )
    engine.sync_messages = AsyncMock(return_value=SyncResult(synced=7, history_id="600"))
    engine.get_status = AsyncMock(
        return_value={
            "account_email": "me@example.com",
            "is_syncing": False,
            "last_synced_at": None,
            "history_id": None,
            "last_error": None,
        }
    )
    return engine


@pytest.fixture
def services(engine):
    services = MagicMock()
    services.credentials = AsyncMock()
    services.credentials.list_by_provider.return_value = [_credential()]
    services.client_for.return_value.get_profile = AsyncMock(
        return_value=Profile("me@example.com", history_id="1")
    )
    services.engine_for.return_value = engine
    services.engine_for_credential.return_value = engine
    return services


@pytest.fixture
def run_cli(services):
    """Run ``main`` with settings, logging and service wiring patched out."""

    @asynccontextmanager
    async def fake_open_services(settings):
        yield services

    def _run(*argv: str) -> int:
        with (
            patch("mailmirror.cli.get_settings", return_value=_mock_settings()),
            patch("mailmirror.cli.setup_logging"),
            patch("mailmirror.cli.open_services", fake_open_services),
        ):
            return main(list(argv))

    return _run


class TestParser:
    def test_sync_defaults(self):
        args = build_parser().parse_args(["sync"])
        assert args.full is False
        assert args.limit is None
        assert args.format == "text"

    def test_command_required(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args([])
        assert exc_info.value.code == 2

    @pytest.mark.parametrize("limit", ["0", "-3", "many"])
    def test_bad_limit_exits_2(self, limit, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["sync", "--limit", limit])
        assert exc_info.value.code == 2

    def test_bad_format_exits_2(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["status", "--format", "xml"])
        assert exc_info.value.code == 2


class TestGenerateKey:
    def test_prints_usable_key(self, capsys):
        assert main(["generate-key"]) == 0
        key = capsys.readouterr().out.strip()
        assert len(base64.b64decode(key)) == 32


class TestSyncCommand:
    def test_incremental_by_default(self, run_cli, engine, services, capsys):
        assert run_cli("sync") == 0

        engine.incremental_sync.assert_awaited_once_with(100)
        services.engine_for.assert_called_once_with("user-1", "me@example.com")
        out = capsys.readouterr().out
        assert "Synced me@example.com (incremental)" in out
        assert "new messages:     2" in out

    def test_full_with_limit_has_no_date_window(self, run_cli, engine):
        """An explicit full sync is never narrowed to the first-run window."""
        assert run_cli("sync", "--full", "--limit", "500") == 0
        engine.sync_messages.assert_awaited_once_with(500, query=None)
        engine.get_status.assert_not_awaited()

    def test_query_implies_full(self, run_cli, engine):
        assert run_cli("sync", "--query", "from:boss") == 0
        engine.sync_messages.assert_awaited_once_with(100, query="from:boss")

    def test_json_output(self, run_cli, capsys):
        assert run_cli("sync", "--format", "json") == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["account_email"] == "me@example.com"
        assert payload["synced"] == 2
        assert payload["history_id"] == "500"
        assert payload["success"] is True

    def test_json_failure_reported_on_stdout(self, run_cli, engine, capsys):
        engine.incremental_sync.side_effect = SyncInProgressError("already running")

        with patch("mailmirror.cli.log"):
            assert run_cli("sync", "--format", "json") == 1

        captured = capsys.readouterr()
        assert json.loads(captured.out) == {"success": False, "error": "already running"}
        assert captured.err == ""

    def test_json_cli_error_reported_on_stdout(self, run_cli, services, capsys):
        services.credentials.list_by_provider.return_value = []
        assert run_cli("sync", "--format", "json") == 1
        payload = json.loads(capsys.readouterr().out)
        assert payload["success"] is False
        assert "No linked Gmail account" in payload["error"]

    def test_explicit_user(self, run_cli, services):
        assert run_cli("sync", "--user-id", "user-9") == 0
        services.client_for.assert_called_once_with("user-9")
        services.credentials.list_by_provider.assert_not_awaited()

    def test_no_linked_account(self, run_cli, services, capsys):
        services.credentials.list_by_provider.return_value = []
        assert run_cli("sync") == 1
        assert "No linked Gmail account" in capsys.readouterr().err

    def test_several_users_need_user_id(self, run_cli, services, capsys):
        services.credentials.list_by_provider.return_value = [
            _credential("user-1"),
            _credential("user-2"),
        ]
        assert run_cli("sync") == 1
        assert "--user-id" in capsys.readouterr().err

    def test_auth_failure_exits_1(self, run_cli, services, capsys):
        services.client_for.return_value.get_profile.side_effect = AuthenticationError(
            "No valid access token for user user-1"
        )
        assert run_cli("sync") == 1
        assert "No valid access token" in capsys.readouterr().err

    def test_sync_in_progress_exits_1(self, run_cli, engine):
        engine.incremental_sync.side_effect = SyncInProgressError("already running")
        assert run_cli("sync") == 1

    def test_verbose_enables_debug(self, services):
        settings = _mock_settings()

        @asynccontextmanager
        async def fake_open_services(_settings):
            yield services

        with (
            patch("mailmirror.cli.get_settings", return_value=settings),
            patch("mailmirror.cli.setup_logging"),
            patch("mailmirror.cli.open_services", fake_open_services),
        ):
            assert main(["sync", "-v"]) == 0

        assert settings.log_level == "DEBUG"


class TestStatusCommand:
    def test_text_output(self, run_cli, capsys):
        assert run_cli("status") == 0
        out = capsys.readouterr().out
        assert "me@example.com [user-1] idle" in out
        assert "last synced: never" in out

    def test_json_output(self, run_cli, capsys):
        assert run_cli("status", "--format", "json") == 0
        rows = json.loads(capsys.readouterr().out)
        assert rows[0]["user_id"] == "user-1"

    def test_filter_by_user(self, run_cli, services):
        services.credentials.list_for_user.return_value = [_credential("user-3")]
        assert run_cli("status", "--user-id", "user-3") == 0
        services.credentials.list_for_user.assert_awaited_once_with("user-3")

    def test_no_accounts(self, run_cli, services, capsys):
        services.credentials.list_by_provider.return_value = [_credential(email=None)]
        assert run_cli("status") == 0
        assert "No linked Gmail accounts." in capsys.readouterr().out


class TestSearchCommand:
    @pytest.fixture
    def mailbox(self, services):
        services.credentials.list_for_user.return_value = [_credential()]
        mailbox = services.mailbox_for.return_value
        mailbox.search_messages = AsyncMock(
            return_value=[
                {
                    "id": "m1",
                    "thread_id": "t1",
                    "subject": "Invoice 42",
                    "sender": "billing@example.com",
                    "snippet": "Your invoice is attached",
                    "internal_date": datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
                }
            ]
        )
        return mailbox

    def test_text_results(self, run_cli, services, mailbox, capsys):
        assert run_cli("search", "invoice") == 0

        mailbox.search_messages.assert_awaited_once_with("invoice", limit=20)
        services.mailbox_for.assert_called_once_with("user-1", "me@example.com")
        out = capsys.readouterr().out
        assert 'Found 1 results for: "invoice"' in out
        assert "[gmail] Invoice 42" in out
        assert "From: billing@example.com" in out

    def test_json_results(self, run_cli, mailbox, capsys):
        assert run_cli("search", "invoice", "--limit", "5", "--format", "json") == 0

        mailbox.search_messages.assert_awaited_once_with("invoice", limit=5)
        rows = json.loads(capsys.readouterr().out)
        assert rows[0]["id"] == "m1"
        assert rows[0]["source"] == "gmail"
        assert rows[0]["account_email"] == "me@example.com"
        assert rows[0]["internal_date"].startswith("2024-05-01")

    def test_no_results_still_succeeds(self, run_cli, mailbox, capsys):
        mailbox.search_messages.return_value = []
        assert run_cli("search", "nothing") == 0
        assert 'No results found for: "nothing"' in capsys.readouterr().out

    def test_query_required(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["search"])
        assert exc_info.value.code == 2


class TestAuthCommand:
    def test_check_with_usable_token(self, run_cli, services, capsys):
        services.refresher.get_valid_access_token = AsyncMock(return_value="ya29.token")
        assert run_cli("auth", "--check") == 0
        services.refresher.get_valid_access_token.assert_awaited_once_with("user-1")
        assert "Authenticated with Google" in capsys.readouterr().out

    def test_check_without_token(self, run_cli, services, capsys):
        services.refresher.get_valid_access_token = AsyncMock(return_value=None)
        assert run_cli("auth", "--check", "--user-id", "user-5") == 1
        assert "Not authenticated with Google for user-5" in capsys.readouterr().out

    def test_check_with_revoked_token(self, run_cli, services):
        services.refresher.get_valid_access_token = AsyncMock(
            side_effect=TokenRefreshError("invalid_grant", status=400)
        )
        with patch("mailmirror.cli.log"):
            assert run_cli("auth", "--check") == 1

    def test_prints_consent_url(self, run_cli, services, capsys):
        services.auth.generate_auth_url.return_value = ("https://accounts/auth?x=1", "state")
        assert run_cli("auth", "--user-id", "user-7") == 0
        services.auth.generate_auth_url.assert_called_once_with("user-7")
        assert "https://accounts/auth?x=1" in capsys.readouterr().out

    def test_consent_url_needs_user(self, run_cli, capsys):
        assert run_cli("auth") == 1
        assert "--user-id" in capsys.readouterr().err


class TestMigrateCommand:
    def _run(self, stats=None, error=None):
        pool = AsyncMock()
        with (
            patch("mailmirror.cli.get_settings", return_value=_mock_settings()),
            patch("mailmirror.cli.setup_logging"),
            patch("mailmirror.cli.build_cipher", side_effect=error),
            patch("mailmirror.cli.create_pool", new_callable=AsyncMock, return_value=pool),
            patch("mailmirror.cli.PostgresCredentialStore") as mock_store_cls,
            patch(
                "mailmirror.cli.encrypt_legacy_tokens", new_callable=AsyncMock, return_value=stats
            ),
        ):
            mock_store_cls.return_value.ensure_schema = AsyncMock()
            code = main(["migrate-tokens"])
        return code, pool

    def test_clean_migration(self, capsys):
        code, pool = self._run(MigrationStats(total=3, encrypted=2, already_encrypted=3))
        assert code == 0
        pool.close.assert_awaited_once()
        assert "Rows encrypted:          2" in capsys.readouterr().out

    def test_errors_exit_1(self, capsys):
        stats = MigrationStats(total=2, encrypted=1, errors=1, failed_accounts=["google:g-2"])
        code, _ = self._run(stats)
        assert code == 1
        assert "failed: google:g-2" in capsys.readouterr().out

    def test_bad_key_exits_1(self, capsys):
        code, _ = self._run(error=ConfigurationError("ENCRYPTION_KEY must decode to 32 bytes"))
        assert code == 1
        assert "32 bytes" in capsys.readouterr().err


class TestConfiguration:
    def test_missing_key_exits_1(self, monkeypatch, capsys):
        monkeypatch.delenv("ENCRYPTION_KEY", raising=False)
        monkeypatch.chdir("/")
        assert main(["status"]) == 1
        assert "Configuration error" in capsys.readouterr().err
