"""
Tests for the command line interface.
"""

import json
import tempfile
from pathlib import Path
from unittest.mock import Mock, patch

from click.testing import CliRunner

from ...cli import cli
from ..config import SyncConfig
from ..error_tracker import MissingCoordinateError
from ..models import ObjectIdentifiers, SyncType


def _summary(failed_runs=0):
    summary = Mock(failed_runs=failed_runs)
    summary.to_dict.return_value = {"failed_runs": failed_runs}
    return summary


class TestCommands:
    def test_sync_all(self):
        orchestrator = Mock()
        orchestrator.run_sync.return_value = _summary()
        with patch("cpsync.cli.load_orchestrator", return_value=orchestrator) as load:
            result = CliRunner().invoke(cli, ["sync", "local", "all", "--config", "broker.yaml"])

        assert result.exit_code == 0, result.output
        load.assert_called_once_with("broker.yaml", "local")
        orchestrator.run_sync.assert_called_once_with(list(SyncType))

    def test_sync_failure_sets_exit_code(self):
        orchestrator = Mock()
        orchestrator.run_sync.return_value = _summary(failed_runs=1)
        with patch("cpsync.cli.load_orchestrator", return_value=orchestrator):
            result = CliRunner().invoke(cli, ["sync", "staging", "new"])

        assert result.exit_code == 1
        orchestrator.run_sync.assert_called_once_with([SyncType.NEW])

    def test_unknown_environment(self):
        result = CliRunner().invoke(cli, ["sync", "qa", "new"])
        assert result.exit_code == 2

    def test_mint(self):
        orchestrator = Mock()
        orchestrator.mint.return_value = "ZLD2024-101"
        with patch("cpsync.cli.load_orchestrator", return_value=orchestrator):
            result = CliRunner().invoke(cli, [
                "ids", "mint", "local", "--site-id", "site", "--list-id", "list", "--list-item-id", "1",
            ])

        assert result.output.strip() == "ZLD2024-101"
        orchestrator.mint.assert_called_once_with(ObjectIdentifiers(site_id="site", list_id="list", list_item_id="1"))

    def test_mint_error(self):
        orchestrator = Mock()
        orchestrator.mint.side_effect = MissingCoordinateError("list_item_id")
        with patch("cpsync.cli.load_orchestrator", return_value=orchestrator):
            result = CliRunner().invoke(cli, ["ids", "mint", "local", "--site-id", "site"])

        assert result.exit_code == 1
        assert "list_item_id is empty" in result.output

    def test_resolve(self):
        orchestrator = Mock()
        orchestrator.resolve.return_value = ObjectIdentifiers(object_id="ZLD2024-1", drive_id="d")
        with patch("cpsync.cli.load_orchestrator", return_value=orchestrator):
            result = CliRunner().invoke(cli, ["ids", "resolve", "local", "--object-id", "ZLD2024-1"])

        assert json.loads(result.output)["drive_id"] == "d"

    def test_process_queue(self):
        orchestrator = Mock()
        orchestrator.process_notifications.return_value = {'received': 2, 'processed': 1, 'failed': 1, 'dropped': 0}
        with patch("cpsync.cli.load_orchestrator", return_value=orchestrator):
            result = CliRunner().invoke(cli, ["webhook", "process-queue", "local", "--max-messages", "4"])

        orchestrator.process_notifications.assert_called_once_with(4)
        assert "processed 1" in result.output

    def test_init_config(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            output = Path(temp_dir) / "broker.yaml"
            runner = CliRunner()

            assert runner.invoke(cli, ["init-config", str(output)]).exit_code == 0
            assert SyncConfig.from_yaml(output).object_id_prefix == "ZLD"
            assert runner.invoke(cli, ["init-config", str(output)]).exit_code == 1
            assert runner.invoke(cli, ["init-config", str(output), "--force"]).exit_code == 0
