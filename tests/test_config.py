from __future__ import annotations

import os
from pathlib import Path

from achroot.modules import config


def test_defaults(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    settings = config.resolve(environ={})

    assert settings["branch"] == "latest-stable"
    assert settings["chroot_dir"] == "/alpine"
    assert settings["bind_dir"] == os.getcwd()
    assert settings["keep_vars"] == ["ARCH", "CI", "QEMU_EMULATOR", "TRAVIS_.*"]


def test_file_then_environment_then_flags(tmp_path: Path) -> None:
    conf = tmp_path / "config.yml"
    conf.write_text(
        "branch: '3.18'\n"
        "mirror: http://mirror.example/alpine\n"
        "packages: [git, make]\n"
        "chroot_dir: /srv/alpine\n",
        encoding="utf-8",
    )
    environ = {"ACHROOT_CONFIG": str(conf), "ALPINE_BRANCH": "3.19", "ALPINE_PACKAGES": "curl  jq"}

    settings = config.resolve({"branch": None, "packages": [], "bind_dir": "/work"}, environ=environ)

    assert settings["branch"] == "v3.19"
    assert settings["mirror"] == "http://mirror.example/alpine"
    assert settings["packages"] == ["curl", "jq"]
    assert settings["chroot_dir"] == "/srv/alpine"
    assert settings["bind_dir"] == "/work"

    settings = config.resolve({"branch": "edge", "packages": ["bash"]}, environ=environ)

    assert settings["branch"] == "edge"
    assert settings["packages"] == ["bash"]


def test_bind_dir_flag_wins_over_environment() -> None:
    settings = config.resolve({"bind_dir": "/flag"}, environ={"BIND_DIR": "/env"}, base=config.DEFAULTS)
    assert settings["bind_dir"] == "/flag"


def test_missing_or_empty_file(tmp_path: Path) -> None:
    assert config.load_config(str(tmp_path / "absent.yml")) == config.DEFAULTS
    empty = tmp_path / "empty.yml"
    empty.write_text("", encoding="utf-8")
    assert config.load_config(str(empty)) == config.DEFAULTS


def test_normalize_branch() -> None:
    assert config.normalize_branch("3.19") == "v3.19"
    assert config.normalize_branch("v3.19") == "v3.19"
    assert config.normalize_branch("edge") == "edge"


def test_host_keys_dirs_from_environment() -> None:
    settings = config.resolve(environ={"ALPINE_KEYS_DIRS": "/srv/keys  /etc/apk/keys"}, base=config.DEFAULTS)

    assert settings["host_keys_dirs"] == ["/srv/keys", "/etc/apk/keys"]
    assert settings["alpine_keys"] == {}
