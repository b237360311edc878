"""
Tests for the command line entry point.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fieldsync.main import build_config, main, parse_args
from fieldsync.sync.errors import OfflineError
from fieldsync.sync.sync_coordinator import SyncReport


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("FIELDSYNC_API_BASE_URL", "FIELDSYNC_API_TIMEOUT", "FIELDSYNC_DB_PATH",
                 "FIELDSYNC_SYNC_INTERVAL", "FIELDSYNC_DEBUG"):
        monkeypatch.delenv(name, raising=False)


def _mock_service():
    service = MagicMock()
    service.get_local_stats = AsyncMock(return_value={"total": 2, "synced": 0})
    service.sync_once = AsyncMock()
    service.stop = AsyncMock()
    service.start = AsyncMock()
    return service


class TestArguments:
    """Test cases for argument parsing and configuration overrides."""

    @pytest.mark.unit
    def test_defaults(self):
        args = parse_args([])

        assert not args.sync_once
        assert not args.stats
        assert not args.debug

    @pytest.mark.unit
    def test_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["--stats", "--sync-once"])

    @pytest.mark.unit
    def test_overrides_applied(self):
        config = build_config(parse_args(["--base-url", "http://localhost:8080/", "--db", "/tmp/x.db", "--debug"]))

        assert config.api.base_url == "http://localhost:8080"
        assert config.storage.path == "/tmp/x.db"
        assert config.debug is True

    @pytest.mark.unit
    def test_environment_used_without_overrides(self, monkeypatch):
        monkeypatch.setenv("FIELDSYNC_API_BASE_URL", "http://collect.local")

        assert build_config(parse_args([])).api.base_url == "http://collect.local"


class TestMain:
    """Test cases for the main function."""

    @pytest.mark.unit
    @patch('fieldsync.main.configure_logging')
    @patch('fieldsync.main.CollectService')
    def test_stats_mode(self, mock_service_class, mock_configure_logging, capsys):
        service = _mock_service()
        mock_service_class.return_value = service

        assert main(["--stats"]) == 0

        service.get_local_stats.assert_awaited_once()
        service.stop.assert_awaited_once()
        service.start.assert_not_awaited()
        assert '"total": 2' in capsys.readouterr().out
        mock_configure_logging.assert_called_once_with(False)

    @pytest.mark.unit
    @patch('fieldsync.main.configure_logging')
    @patch('fieldsync.main.CollectService')
    def test_sync_once_success(self, mock_service_class, mock_configure_logging, capsys):
        service = _mock_service()
        now = datetime.now(timezone.utc)
        service.sync_once.return_value = SyncReport(started_at=now, finished_at=now, attempted=1, synced=1)
        mock_service_class.return_value = service

        assert main(["--sync-once"]) == 0
        assert '"synced": 1' in capsys.readouterr().out
        service.stop.assert_awaited_once()

    @pytest.mark.unit
    @patch('fieldsync.main.configure_logging')
    @patch('fieldsync.main.CollectService')
    def test_sync_once_with_failures(self, mock_service_class, mock_configure_logging):
        service = _mock_service()
        now = datetime.now(timezone.utc)
        service.sync_once.return_value = SyncReport(started_at=now, finished_at=now, attempted=1, failed=1)
        mock_service_class.return_value = service

        assert main(["--sync-once"]) == 1

    @pytest.mark.unit
    @patch('fieldsync.main.configure_logging')
    @patch('fieldsync.main.CollectService')
    def test_sync_once_offline(self, mock_service_class, mock_configure_logging):
        service = _mock_service()
        service.sync_once.side_effect = OfflineError("No internet connection")
        mock_service_class.return_value = service

        assert main(["--sync-once"]) == 1
        service.stop.assert_awaited_once()

    @pytest.mark.unit
    @patch('fieldsync.main.configure_logging')
    @patch('fieldsync.main.CollectService')
    def test_run_mode_stops_on_interrupt(self, mock_service_class, mock_configure_logging):
        """Test that the long-running mode shuts the service down on Ctrl+C."""
        service = _mock_service()
        service.start.side_effect = KeyboardInterrupt
        mock_service_class.return_value = service

        assert main([]) == 0
        service.start.assert_awaited_once()
