"""
CLI Unit Tests
==============
Commands driven through typer's CliRunner against a temporary run store.
"""

import pytest
from typer.testing import CliRunner

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    from config.settings import Settings

    path = tmp_path / "runs.db"
    monkeypatch.setattr(Settings, "DB_PATH", str(path))
    return path


@pytest.fixture
def logo(tmp_path, png_bytes):
    path = tmp_path / "logo.png"
    path.write_bytes(png_bytes)
    return path


class TestCreateCommand:

    def test_live_mode_requires_signer(self, logo, db_path):
        from cli import app

        result = runner.invoke(app, ["create", str(logo), "--name", "Chimp", "--symbol", "CHIMP", "--supply", "10"])

        assert result.exit_code == 1
        assert not db_path.exists()

    def test_unknown_capability(self, logo, db_path):
        from cli import app

        result = runner.invoke(app, [
            "create", str(logo), "--name", "Chimp", "--symbol", "CHIMP", "--supply", "10",
            "--revoke", "mint,owner", "--simulate",
        ])

        assert result.exit_code == 2

    def test_invalid_manifest(self, logo, db_path):
        from cli import app

        result = runner.invoke(app, [
            "create", str(logo), "--name", "Chimp", "--symbol", "N/A", "--supply", "10", "--simulate",
        ])

        assert result.exit_code == 2

    def test_simulated_run_recorded(self, logo, db_path):
        from cli import app
        from mintforge.shared.system.persistence import SqliteRunStore

        result = runner.invoke(app, [
            "create", str(logo), "--name", "Chimp", "--symbol", "CHIMP", "--supply", "10",
            "--revoke", "mint", "--no-listing", "--simulate", "--json",
        ])

        assert result.exit_code == 0, result.output
        store = SqliteRunStore(db_path)
        runs = store.list_runs()
        store.close()
        assert len(runs) == 1
        assert runs[0].symbol == "CHIMP"
        assert "mint" in runs[0].to_dict()["operations"]["revoke"]


class TestRunsCommand:

    def test_empty_store(self, db_path):
        from cli import app

        result = runner.invoke(app, ["runs"])

        assert result.exit_code == 0
        assert "No runs recorded" in result.output


class TestInterrupt:
    """Ctrl-C cancels the run instead of aborting the event loop."""

    def test_interrupt_cancels_run_token(self):
        import signal
        from unittest.mock import MagicMock

        from cli import _install_interrupt_handler
        from mintforge.shared.system.cancellation import CancellationToken

        loop = MagicMock()
        token = CancellationToken()

        assert _install_interrupt_handler(loop, token) is True
        sig, callback = loop.add_signal_handler.call_args.args
        assert sig == signal.SIGINT

        callback()

        assert token.cancelled
        assert "Ctrl-C" in token.reason

    def test_no_signal_support_falls_back(self):
        from unittest.mock import MagicMock

        from cli import _install_interrupt_handler
        from mintforge.shared.system.cancellation import CancellationToken

        loop = MagicMock()
        loop.add_signal_handler.side_effect = NotImplementedError

        assert _install_interrupt_handler(loop, CancellationToken()) is False

    def test_cancelled_run_reports_retry_safety(self, logo, db_path, monkeypatch):
        from mintforge.shared.system.cancellation import CancellationToken

        class InterruptedToken(CancellationToken):
            def __init__(self):
                super().__init__()
                self.cancel("Interrupted by user (Ctrl-C)")

        monkeypatch.setattr("cli.CancellationToken", InterruptedToken)
        from cli import app

        result = runner.invoke(app, [
            "create", str(logo), "--name", "Chimp", "--symbol", "CHIMP", "--supply", "10",
            "--no-listing", "--simulate",
        ])

        assert result.exit_code == 130, result.output
        assert "CANCELLED" in result.output
        assert "Safe to retry: yes" in result.output

    def test_report_exit_codes(self):
        from cli import _report
        from mintforge.shared.models.pipeline import PipelineResult, PipelineRun, RunStatus

        cancelled = PipelineResult(run=PipelineRun(status=RunStatus.CANCELLED), error={"stage": "MINT", "retry_safe": False})
        failed = PipelineResult(run=PipelineRun(status=RunStatus.FAILED), error={"stage": "MINT", "retry_safe": True})

        assert _report(cancelled) == 130
        assert _report(failed) == 1
