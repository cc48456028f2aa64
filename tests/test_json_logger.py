import io
import json
from pathlib import Path

import pytest

from invoice_downloader.common.json_logger import JsonLogger, log_event, redact, timed_event
from invoice_downloader.crypto import decrypt_secret, encrypt_secret


def _events(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_log_event_emits_ndjson_with_bound_context() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-1", stream=stream, log_file_path=None)

    log_event(logger=logger.bind(vendor_id="amazon"), phase="login", message="Login phase AUTHENTICATED", attempt=1)

    [event] = _events(stream)
    assert event["run_id"] == "run-1"
    assert event["vendor_id"] == "amazon"
    assert event["phase"] == "login"
    assert event["status"] == "ok"
    assert event["attempt"] == 1
    assert "ts" in event


def test_credentials_are_redacted_before_emission() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-1", stream=stream, log_file_path=None)

    logger.info(
        phase="credentials",
        status="warn",
        message="stored",
        password="hunter2",
        extras={"totp_secret": "JBSWY3DPEHPK3PXP", "username": "buyer@example.com"},
    )

    raw = stream.getvalue()
    assert "hunter2" not in raw
    assert "JBSWY3DPEHPK3PXP" not in raw
    [event] = _events(stream)
    assert event["password"] == "***"
    assert event["extras"] == {"totp_secret": "***", "username": "buyer@example.com"}


def test_redact_walks_lists() -> None:
    assert redact([{"token": "abc"}, {"name": "x"}]) == [{"token": "***"}, {"name": "x"}]


def test_log_file_receives_copy_and_closed_logger_is_silent(tmp_path: Path) -> None:
    stream = io.StringIO()
    log_path = tmp_path / "logs" / "run.ndjson"
    logger = JsonLogger(run_id="run-2", stream=stream, log_file_path=str(log_path))

    logger.info(phase="job", message="Job started")
    logger.close()
    logger.info(phase="job", message="after close")

    assert len(log_path.read_text(encoding="utf-8").splitlines()) == 1
    assert len(stream.getvalue().splitlines()) == 1


def test_timed_event_logs_failure_and_reraises() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-3", stream=stream, log_file_path=None)

    with pytest.raises(RuntimeError):
        with timed_event(logger=logger, phase="download", message="scan"):
            raise RuntimeError("boom")

    [event] = _events(stream)
    assert event["status"] == "error"
    assert event["message"] == "scan failed: boom"
    assert "duration_ms" in event


def test_encrypt_round_trip_and_wrong_key() -> None:
    token = encrypt_secret("key-one", '{"amazon": {"password": "pw"}}')

    assert decrypt_secret("key-one", token) == '{"amazon": {"password": "pw"}}'
    with pytest.raises(ValueError):
        decrypt_secret("key-two", token)


def test_encrypt_is_randomised_and_detects_tampering() -> None:
    first = encrypt_secret("key-one", "same plaintext")
    second = encrypt_secret("key-one", "same plaintext")
    tampered = first[:-6] + ("A" if first[-6] != "A" else "B") + first[-5:]

    assert first != second
    assert "same plaintext" not in first
    with pytest.raises(ValueError, match="authentication failed"):
        decrypt_secret("key-one", tampered)
