import os
import stat

import pytest

from cryptarch import remote
from cryptarch.errors import ToolInvocationError, ValidationError


def test_parse_package_list_skips_comments_and_blanks():
    text = "# core\nbase\n\nlinux   # kernel\nbase\n  neovim  \n"
    assert remote.parse_package_list(text) == ["base", "linux", "neovim"]


def test_fetch_package_list_uses_tls_only_curl(fake_system):
    fake_system.package_list = "base\n# x\nlinux-lts\n"
    assert remote.fetch_package_list("https://example.org/pkgs.txt") == ["base", "linux-lts"]
    cmd = fake_system.ran("curl")[0]
    assert cmd[:6] == ["curl", "--proto", "=https", "--tlsv1.2", "-sSf", "https://example.org/pkgs.txt"]


def test_fetch_rejects_plain_http(fake_system):
    with pytest.raises(ValidationError):
        remote.fetch_package_list("http://example.org/pkgs.txt")
    assert fake_system.ran("curl") == []


def test_fetch_retries_then_fails(fake_system):
    fake_system.fail("curl", rc=22, err="404", times=3)
    with pytest.raises(ToolInvocationError):
        remote.fetch_package_list("https://example.org/pkgs.txt", attempts=3)
    assert len(fake_system.ran("curl")) == 3


def test_empty_package_list_is_rejected(fake_system):
    fake_system.package_list = "# nothing here\n"
    with pytest.raises(ValidationError):
        remote.fetch_package_list("https://example.org/pkgs.txt")


def test_fetch_second_stage_places_executable_script(fake_system, tmp_path):
    dest = tmp_path / "home" / "paul" / "post-install.sh"
    remote.fetch_second_stage("https://example.org/post-install.sh", str(dest))
    assert dest.exists()
    assert stat.S_IMODE(os.stat(dest).st_mode) == 0o755
    assert ["-o", str(dest)] == fake_system.ran("curl")[0][5:7]
