import json

import pytest

from cryptarch import cli, pipeline

from conftest import LUKS_UUID


@pytest.fixture
def config_file(tmp_path, install_config):
    path = tmp_path / "cryptarch.json"
    path.write_text(json.dumps({
        "target_root": install_config.target_root,
        "cpuinfo_path": install_config.cpuinfo_path,
        "settle_timeout": 2.0,
        "poll_interval": 0.01,
    }), encoding="utf-8")
    return str(path)


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr(pipeline.os, "geteuid", lambda: 0)


def _run(capsys, *argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(list(argv))
    out = capsys.readouterr().out.strip().splitlines()
    return excinfo.value.code, out[-1]


def test_install_ok(fake_system, config_file, passphrase_file, as_root, capsys):
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "paul", "--teardown",
                      "--config", config_file, "--passphrase-file", passphrase_file)
    payload = json.loads(line)
    assert code == 0
    assert payload["result"] == "INSTALL_OK"
    assert payload["luks_uuid"] == LUKS_UUID
    assert payload["device"] == "/dev/test0"
    assert [s["stage"] for s in payload["stages"]][-1] == "teardown"
    assert payload["log_path"].endswith("cryptarch.jsonl")


def test_diagnostic_ok(fake_system, config_file, passphrase_file, as_root, capsys):
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "paul", "--diagnostic",
                      "--config", config_file, "--passphrase-file", passphrase_file)
    payload = json.loads(line)
    assert code == 0
    assert payload["result"] == "DIAGNOSTIC_OK"
    assert payload["stages"][-1]["outcome"] == "skipped"
    assert fake_system.opened


def test_mode_flag_is_required(fake_system, config_file, capsys):
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "paul", "--config", config_file)
    payload = json.loads(line)
    assert code == 1
    assert payload["result"] == "FAIL_VALIDATION"
    assert payload["field"] == "teardown"
    assert fake_system.calls == []


def test_long_hostname_is_rejected(fake_system, config_file, capsys):
    code, line = _run(capsys, "run", "/dev/test0", "x" * 21, "paul", "--teardown", "--config", config_file)
    payload = json.loads(line)
    assert code == 1
    assert payload["field"] == "hostname"
    assert fake_system.calls == []


def test_missing_passphrase_file(config_file, tmp_path, capsys):
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "paul", "--teardown",
                      "--config", config_file, "--passphrase-file", str(tmp_path / "nope"))
    assert code == 1
    assert json.loads(line)["field"] == "passphrase_file"


def test_plan_touches_nothing(fake_system, config_file, capsys):
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "--diagnostic", "--plan",
                      "--config", config_file)
    payload = json.loads(line)
    assert code == 0
    assert payload["result"] == "PLAN_OK"
    # username falls back to the configured default
    assert payload["plan"]["username"] == "archuser"
    assert payload["plan"]["teardown"] is False
    assert fake_system.calls == []


def test_tool_failure_names_stage(fake_system, config_file, passphrase_file, as_root, capsys):
    fake_system.fail("mkfs.fat", err="mkfs.fat: unable to open /dev/test0p1")
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "paul", "--teardown",
                      "--config", config_file, "--passphrase-file", passphrase_file)
    payload = json.loads(line)
    assert code == 1
    assert payload["result"] == "FAIL_TOOL"
    assert payload["stage"] == "format"
    assert payload["last_completed"] == "encrypt"
    assert "unable to open" in payload["why"]


def test_plain_output(fake_system, config_file, capsys):
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "paul", "--no-json", "--config", config_file)
    assert code == 1
    assert line.startswith("result=FAIL_VALIDATION why=teardown: ")
    assert "device=/dev/test0" in line


def test_unexpected_error_is_reported(monkeypatch, capsys):
    def broken(_path):
        raise RuntimeError("config loader exploded")

    monkeypatch.setattr(cli, "load_config", broken)
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "paul", "--teardown")
    payload = json.loads(line)
    assert code == 1
    assert payload["result"] == "FAIL_UNHANDLED"
    assert payload["error"] == "RuntimeError"


def test_non_root_is_a_validation_failure(fake_system, config_file, passphrase_file, monkeypatch, capsys):
    monkeypatch.setattr(pipeline.os, "geteuid", lambda: 1000)
    code, line = _run(capsys, "run", "/dev/test0", "my-archbox", "paul", "--teardown",
                      "--config", config_file, "--passphrase-file", passphrase_file)
    payload = json.loads(line)
    assert code == 1
    assert payload["result"] == "FAIL_VALIDATION"
    assert payload["field"] == "privilege"
    assert fake_system.calls == []
