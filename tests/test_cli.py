import io
import json
from pathlib import Path

import pytest

from invoice_downloader import cli
from invoice_downloader.config import get_config


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("SECRET_KEY", "cli-secret")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.delenv("JSON_LOG_FILE", raising=False)
    get_config.cache_clear()
    yield tmp_path
    get_config.cache_clear()


def test_totp_prints_window_and_current_code(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli.main(["totp", "JBSWY3DPEHPK3PXP", "--window", "1"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == cli.EXIT_OK
    assert len(payload["codes"]) == 3
    assert len(payload["current"]) == 6 and payload["current"].isdigit()
    assert 0 < payload["seconds_remaining"] <= 30


def test_totp_rejects_bad_secret(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["totp", "!!!???"]) == cli.EXIT_USAGE
    assert capsys.readouterr().err


def test_totp_reads_secret_from_stdin(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("JBSWY3DPEHPK3PXP\n"))

    exit_code = cli.main(["totp", "--secret-stdin", "--window", "0"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == cli.EXIT_OK
    assert len(payload["codes"]) == 1
    assert payload["current"].isdigit()


def test_totp_prompts_when_no_secret_given(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    prompts = []

    def _getpass(prompt: str) -> str:
        prompts.append(prompt)
        return "JBSWY3DPEHPK3PXP"

    monkeypatch.setattr("getpass.getpass", _getpass)

    assert cli.main(["totp"]) == cli.EXIT_OK
    assert prompts == ["TOTP secret: "]
    assert "JBSWY3DPEHPK3PXP" not in capsys.readouterr().out


def test_run_rejects_invalid_limit(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["run", "amazon", "--limit", "0"])

    assert excinfo.value.code == 2
    assert "must be >= 1" in capsys.readouterr().err


def test_missing_secret_key_is_a_usage_error(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.delenv("SECRET_KEY", raising=False)
    get_config.cache_clear()
    try:
        assert cli.main(["invoices"]) == cli.EXIT_USAGE
    finally:
        get_config.cache_clear()

    assert "configuration error" in capsys.readouterr().err


def test_credentials_set_list_remove(
    env: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("s3cret-pw\n"))

    assert cli.main(["credentials", "set", "amazon", "--username", "buyer@example.com", "--password-stdin"]) == 0
    capsys.readouterr()

    assert cli.main(["credentials", "list"]) == cli.EXIT_OK
    listing = json.loads(capsys.readouterr().out)
    assert listing["amazon"]["username"] == "buyer@example.com"
    assert listing["amazon"]["totp_enabled"] is False
    assert "s3cret-pw" not in json.dumps(listing)

    assert cli.main(["credentials", "remove", "amazon"]) == cli.EXIT_OK
    assert cli.main(["credentials", "remove", "amazon"]) == cli.EXIT_FAILED


def test_credentials_set_with_changed_secret_key_keeps_store(
    env: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("s3cret-pw\n"))
    assert cli.main(["credentials", "set", "amazon", "--username", "buyer@example.com", "--password-stdin"]) == 0
    before = (env / "credentials.enc").read_bytes()

    monkeypatch.setenv("SECRET_KEY", "rotated-secret")
    get_config.cache_clear()
    monkeypatch.setattr("sys.stdin", io.StringIO("other-pw\n"))
    exit_code = cli.main(["credentials", "set", "ebay", "--username", "seller@example.com", "--password-stdin"])

    assert exit_code == cli.EXIT_FAILED
    assert "unreadable" in capsys.readouterr().err
    assert (env / "credentials.enc").read_bytes() == before


def test_credentials_set_rejects_invalid_totp_secret(
    env: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("pw\n"))

    exit_code = cli.main(
        ["credentials", "set", "amazon", "--username", "buyer@example.com", "--totp-secret", "!!!???", "--password-stdin"]
    )

    assert exit_code == cli.EXIT_USAGE
    assert not (env / "credentials.enc").exists()


def test_file_command_refuses_paths_outside_storage(env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["file", "../credentials.enc"]) == cli.EXIT_FAILED
    assert "'..'" in capsys.readouterr().err
