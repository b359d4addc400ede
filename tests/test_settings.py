import pytest
import tomli

from settings import DEFAULT_CONFIG, ConfigError, get_api_key, load_config


def test_missing_config_writes_defaults(tmp_path):
    path = tmp_path / "config.toml"

    with pytest.raises(ConfigError, match="Default"):
        load_config(str(path))

    with open(path, "rb") as f:
        assert tomli.load(f) == DEFAULT_CONFIG
    assert load_config(str(path)) == DEFAULT_CONFIG


def test_partial_config_is_merged_with_defaults(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[bot]\ndebug_mode = true\n\n[virustotal]\nmax_polls = 3\n')

    config = load_config(str(path))

    assert config["bot"]["debug_mode"] is True
    assert config["bot"]["scan_workers"] == 3
    assert config["virustotal"]["max_polls"] == 3
    assert config["virustotal"]["poll_interval_seconds"] == 15
    assert config["cache"]["max_age_hours"] == 24
    assert DEFAULT_CONFIG["bot"]["debug_mode"] is False


def test_invalid_toml_raises(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[bot\n")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_api_key_from_environment_wins(monkeypatch):
    monkeypatch.setenv("VIRUSTOTAL_KEY", "from-env")
    config = {"virustotal": {"api_key": "from-file"}}
    assert get_api_key(config, "virustotal", "VIRUSTOTAL_KEY") == "from-env"


def test_placeholder_api_key_is_missing(monkeypatch):
    monkeypatch.delenv("URLSCAN_API_KEY", raising=False)
    assert get_api_key(DEFAULT_CONFIG, "urlscan", "URLSCAN_API_KEY") is None
    assert get_api_key({"urlscan": {"api_key": ""}}, "urlscan", "URLSCAN_API_KEY") is None
    assert get_api_key({"urlscan": {"api_key": "real"}}, "urlscan", "URLSCAN_API_KEY") == "real"
