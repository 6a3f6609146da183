import json

import pytest

from cryptarch.config import CORE_PACKAGES, InstallConfig, load_config
from cryptarch.errors import ValidationError


def test_defaults_match_the_install_script():
    cfg = InstallConfig()
    assert cfg.teardown is None
    assert list(cfg.core_packages) == list(CORE_PACKAGES)
    assert cfg.daemons == ["chronyd", "NetworkManager"]
    assert cfg.timezone == "America/Montreal"
    assert cfg.mapped_name == "cryptroot"
    assert cfg.hooks[cfg.hooks.index("block") + 1] == "encrypt"
    assert cfg.post_install_script_url.startswith("https://")


def test_load_config_overlays_json(tmp_path):
    path = tmp_path / "cryptarch.json"
    path.write_text(json.dumps({"username": "paul", "lvm": True, "teardown": False}), encoding="utf-8")
    cfg = load_config(str(path))
    assert (cfg.username, cfg.lvm, cfg.teardown) == ("paul", True, False)
    assert "lvm2" in cfg.hooks


def test_load_config_without_path_gives_defaults():
    assert load_config(None) == InstallConfig()


@pytest.mark.parametrize("payload", [{"no_such_key": 1}, {"partition_tool": "fdisk"}, ["not", "an", "object"]])
def test_bad_config_is_a_validation_error(tmp_path, payload):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(ValidationError) as excinfo:
        load_config(str(path))
    assert excinfo.value.field == "config"


def test_missing_config_file(tmp_path):
    with pytest.raises(ValidationError):
        load_config(str(tmp_path / "missing.json"))
