import json
import os

import pytest

from tidings.cli.config_manager import DEFAULT_CONFIG, TidingsConfigManager, get_config_manager


@pytest.fixture
def manager(tmp_path, monkeypatch):
    names = {TidingsConfigManager.env_name(key) for key in DEFAULT_CONFIG} | {"OPENAI_API_KEY"}
    monkeypatch.setattr(os, "environ", {k: v for k, v in os.environ.items() if k not in names})
    return TidingsConfigManager(str(tmp_path))


def test_defaults(manager):
    assert manager.get("chunk_size") == 500
    assert manager.get_all() == DEFAULT_CONFIG


def test_set_coerces_persists_and_exports(manager, tmp_path):
    assert manager.set("chunk_size", "800") == 800
    assert manager.set("recognition_verify", "yes") is True
    assert manager.set("chunk_overlap_ratio", "0.1") == 0.1

    assert os.environ["CHUNK_SIZE"] == "800"
    assert os.environ["RECOGNITION_VERIFY"] == "true"
    saved = json.loads((tmp_path / "tidings.json").read_text(encoding="utf-8"))
    assert saved["chunk_size"] == 800
    assert TidingsConfigManager(str(tmp_path)).get("chunk_size") == 800


def test_stop_file_uses_its_own_variable(manager):
    manager.set("stop_file", "/tmp/tidings-stop", persist=False)
    assert os.environ["TIDINGS_STOP_FILE"] == "/tmp/tidings-stop"


def test_reset(manager):
    manager.set("chunk_size", "800")
    assert manager.reset("chunk_size")
    assert manager.get("chunk_size") == 500
    assert not manager.reset("no_such_key")


def test_apply_to_environment_keeps_existing_values(manager, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    manager.apply_to_environment()
    assert os.environ["LOG_LEVEL"] == "DEBUG"
    assert os.environ["EMBED_BATCH_SIZE"] == "100"


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    (tmp_path / "tidings.json").write_text("{not json", encoding="utf-8")
    assert TidingsConfigManager(str(tmp_path)).get_all() == DEFAULT_CONFIG


def test_validate(manager):
    result = manager.validate()
    assert result["valid"]
    assert any("OPENAI_API_KEY" in w for w in result["warnings"])

    manager.set("recognition_providers", "openai,tesseract", persist=False)
    manager.set("chunk_overlap_ratio", "1.5", persist=False)
    result = manager.validate()
    assert not result["valid"]
    assert "Unknown recognition providers: tesseract" in result["issues"]
    assert "chunk_overlap_ratio must be in [0, 1)" in result["issues"]


def test_get_config_manager_reads_directory(tmp_path, monkeypatch):
    monkeypatch.setenv("TIDINGS_CONFIG_DIR", str(tmp_path / "conf"))
    assert get_config_manager().config_file == tmp_path / "conf" / "tidings.json"
