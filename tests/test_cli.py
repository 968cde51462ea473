"""
Tests for the command line interface.
"""

import json
import logging

import pytest

from session_recording_storage.cli import (
    EXIT_INVALID_INPUT,
    EXIT_OK,
    EXIT_PARTIAL_READ,
    EXIT_STORAGE_FAILURE,
    main,
)
from session_recording_storage.logging_utils import LOGGER_ROOT


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger(LOGGER_ROOT)
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


def run(tmp_path, *args: str) -> int:
    return main(["--store-path", str(tmp_path / "store"), *args])


class TestIngestAndEvents:
    """Tests for the ingest and events commands."""

    def test_jsonl_file_round_trip(self, tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test raw events from a JSONL file are numbered and read back in order."""
        events = tmp_path / "events.jsonl"
        events.write_text('{"type": 4, "data": {}}\n\n{"type": 2, "data": {}}\n')

        assert run(tmp_path, "ingest", "s1", str(events)) == EXIT_OK
        receipt = json.loads(capsys.readouterr().out)
        assert receipt["status"] == "accepted"
        assert receipt["envelopes"] == 2
        assert receipt["key"].startswith("rrweb/recordings/sessionId=s1/")

        assert run(tmp_path, "events", "s1") == EXIT_OK
        lines = capsys.readouterr().out.splitlines()
        assert [json.loads(line)["sequence"] for line in lines] == [0, 1]
        assert json.loads(lines[0])["payload"] == {"type": 4, "data": {}}

    def test_json_body_file(self, tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test a JSON request body file is accepted."""
        body = tmp_path / "body.json"
        body.write_text(json.dumps({"sessionId": "s1", "sequence": 5, "rrwebEvent": {"type": 3}}))

        assert run(tmp_path, "ingest", "s1", str(body)) == EXIT_OK
        capsys.readouterr()

        assert run(tmp_path, "events", "s1") == EXIT_OK
        assert json.loads(capsys.readouterr().out)["sequence"] == 5

    def test_empty_session(self, tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run(tmp_path, "events", "nobody") == EXIT_OK
        assert capsys.readouterr().out == ""


class TestExitCodes:
    """Tests for error exit codes."""

    def test_invalid_input(self, tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
        body = tmp_path / "body.json"
        body.write_text(json.dumps({"sessionId": "other", "events": []}))

        assert run(tmp_path, "ingest", "s1", str(body)) == EXIT_INVALID_INPUT
        assert "Invalid input" in capsys.readouterr().err

    def test_unreadable_file(self, tmp_path) -> None:
        assert run(tmp_path, "ingest", "s1", str(tmp_path / "missing.jsonl")) == EXIT_INVALID_INPUT

    def test_wait_timeout_is_storage_failure(self, tmp_path) -> None:
        code = run(tmp_path, "wait", "s1", "--count", "1", "--timeout", "0.05", "--interval", "0.01")
        assert code == EXIT_STORAGE_FAILURE

    def test_wait_success(self, tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
        events = tmp_path / "events.jsonl"
        events.write_text('{"type": 4}\n')
        run(tmp_path, "ingest", "s1", str(events))
        capsys.readouterr()

        assert run(tmp_path, "wait", "s1", "--timeout", "1") == EXIT_OK
        assert "1 event(s) visible" in capsys.readouterr().out

    def test_partial_read(self, tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test an unreadable partition exits with the partial-read code."""
        events = tmp_path / "events.jsonl"
        events.write_text('{"type": 4}\n')
        run(tmp_path, "ingest", "s1", str(events))
        second = tmp_path / "more.json"
        second.write_text(json.dumps({"sessionId": "s1", "sequence": 1, "rrwebEvent": {"type": 3}}))
        run(tmp_path, "ingest", "s1", str(second))
        capsys.readouterr()

        session_dir = tmp_path / "store" / "rrweb" / "recordings" / "sessionId=s1"
        unreadable = sorted(session_dir.iterdir())[0]
        unreadable.unlink()
        unreadable.symlink_to(tmp_path / "gone")

        assert run(tmp_path, "events", "s1") == EXIT_PARTIAL_READ
        captured = capsys.readouterr()
        assert "Incomplete" in captured.err
        assert len(captured.out.splitlines()) == 1
