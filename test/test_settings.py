import os
from pathlib import Path

import pytest

from stagebuild.config import settings
from stagebuild.config.settings import BuildConfig, load_env_file
from stagebuild.utils.logger import get_logger


def test_defaults():
    config = BuildConfig()
    assert config.provider == "local"
    assert config.use_cache is True
    assert config.timeout == 3600.0


def test_from_env(monkeypatch):
    monkeypatch.setenv("STAGEBUILD_PROVIDER", "docker")
    monkeypatch.setenv("STAGEBUILD_STEP_TIMEOUT", "0")
    monkeypatch.setenv("STAGEBUILD_NO_CACHE", "1")
    monkeypatch.setenv("STAGEBUILD_RUNS_DIR", "/tmp/stagebuild-runs")

    config = BuildConfig.from_env()

    assert config.provider == "docker"
    assert config.timeout is None
    assert config.use_cache is False
    assert config.runs_path() == Path("/tmp/stagebuild-runs")


def test_invalid_values(monkeypatch):
    with pytest.raises(ValueError, match="Unknown provider"):
        BuildConfig(provider="podman")
    monkeypatch.setenv("STAGEBUILD_STEP_TIMEOUT", "soon")
    with pytest.raises(ValueError, match="STAGEBUILD_STEP_TIMEOUT"):
        BuildConfig.from_env()


def test_env_file_does_not_override(tmp_path: Path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("STAGEBUILD_CACHE_DIR=cache\nSTAGEBUILD_PROVIDER=docker\n", encoding="utf-8")
    monkeypatch.setenv("STAGEBUILD_PROVIDER", "local")
    monkeypatch.delenv("STAGEBUILD_CACHE_DIR", raising=False)
    monkeypatch.setattr(settings, "_env_file_dir", None)

    load_env_file(env_file)
    try:
        config = BuildConfig.from_env()
        assert config.provider == "local"
        # relative paths resolve against the .env directory
        assert config.cache_path() == (tmp_path / "cache").resolve()
    finally:
        os.environ.pop("STAGEBUILD_CACHE_DIR", None)


def test_logger_prefix_and_streams(capsys):
    log = get_logger("builder")
    log.info("provisioning")
    log.error("boom")

    captured = capsys.readouterr()
    assert captured.out == "[INFO] builder: provisioning\n"
    assert captured.err == "[ERROR] builder: boom\n"
