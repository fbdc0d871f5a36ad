import json

import pytest

from hipop_billing import jobs
from hipop_billing.billing.base import ResetResult
from hipop_billing.errors import StoreUnavailableError


@pytest.fixture(autouse=True)
def quiet(monkeypatch):
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setattr(jobs, "setup_logging", lambda *args, **kwargs: None)


def _stub_run_job(monkeypatch, result=None, error=None):
    seen = []

    async def fake_run_job(args, settings):
        seen.append(args)
        if error is not None:
            raise error
        return result

    monkeypatch.setattr(jobs, "run_job", fake_run_job)
    return seen


def test_parser_defaults():
    parser = jobs.build_parser()

    monthly = parser.parse_args(["monthly-reset"])
    assert monthly.command == "monthly-reset"
    assert monthly.executed_by == "scheduler"

    reset = parser.parse_args(["reset", "--type", "weekly", "--user", "u1", "--user", "u2"])
    assert reset.type == "weekly"
    assert reset.users == ["u1", "u2"]
    assert reset.executed_by == "cli"


def test_parser_rejects_unknown_reset_type():
    with pytest.raises(SystemExit):
        jobs.build_parser().parse_args(["reset", "--type", "hourly"])


def test_main_without_command_prints_help(capsys):
    assert jobs.main([]) == 2
    assert "monthly-reset" in capsys.readouterr().out


def test_main_prints_summary(monkeypatch, capsys):
    seen = _stub_run_job(monkeypatch, result=ResetResult(reset_type="daily", processed=2, skipped=1))

    code = jobs.main(["reset", "--type", "daily", "--user", "u1", "--user", "u2", "--user", "u3"])

    assert code == 0
    assert seen[0].users == ["u1", "u2", "u3"]
    summary = json.loads(capsys.readouterr().out)
    assert summary == {
        "reset_type": "daily",
        "processed": 2,
        "skipped": 1,
        "failed": {},
        "archived": 0,
        "success": True,
    }


def test_partial_failure_exit_code(monkeypatch, capsys):
    _stub_run_job(monkeypatch, result=ResetResult(reset_type="monthly", processed=4, failed={"u9": "timeout"}))

    assert jobs.main(["monthly-reset"]) == 1
    assert json.loads(capsys.readouterr().out)["success"] is False


def test_store_outage_exit_code(monkeypatch, capsys):
    _stub_run_job(monkeypatch, error=StoreUnavailableError("ping"))

    assert jobs.main(["monthly-reset"]) == 2
    out = json.loads(capsys.readouterr().out)
    assert out["success"] is False
    assert out["error"] == "unavailable"
