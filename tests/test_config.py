import json

from freeflow import config
from freeflow.models import Config


def test_load_default_config_when_missing(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)
    monkeypatch.delenv(config.API_KEY_ENV, raising=False)

    cfg = config.load_config()
    assert isinstance(cfg, Config)
    assert cfg.transcription_timeout == 20.0
    assert cfg.max_history_count == 20
    assert cfg.insert_destination == "paste"
    assert cfg.api_key is None


def test_save_and_load_config(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)

    cfg = Config(custom_vocabulary="FreeFlow, Groq", max_history_count=5)
    config.save_config(cfg)

    loaded = config.load_config()
    assert loaded.custom_vocabulary == "FreeFlow, Groq"
    assert loaded.max_history_count == 5


def test_update_config_validates_keys(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)

    config.update_config(insert_destination="clipboard")
    loaded = config.load_config()
    assert loaded.insert_destination == "clipboard"

    try:
        config.update_config(unknown="value")
    except config.ConfigError:
        pass
    else:
        raise AssertionError("Expected ConfigError for invalid key")


def test_update_config_rejects_invalid_values(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "CONFIG_PATH", tmp_path / "config.json")

    for kwargs in ({"insert_destination": "type"}, {"max_history_count": -1}, {"transcription_timeout": 0}):
        try:
            config.update_config(**kwargs)
        except config.ConfigError:
            pass
        else:
            raise AssertionError(f"Expected ConfigError for {kwargs}")


def test_api_key_falls_back_to_environment(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)
    monkeypatch.setenv(config.API_KEY_ENV, "gsk_env")

    assert config.load_config().api_key == "gsk_env"

    config.update_config(custom_vocabulary="Kubernetes")
    stored = json.loads(cfg_path.read_text())
    assert "api_key" not in stored


def test_malformed_config_raises(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text("{not json")
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)

    try:
        config.load_config()
    except config.ConfigError:
        pass
    else:
        raise AssertionError("Expected ConfigError for malformed file")

    cfg_path.write_text(json.dumps({"backend": "whisper"}))
    try:
        config.load_config()
    except config.ConfigError:
        pass
    else:
        raise AssertionError("Expected ConfigError for unknown stored key")
