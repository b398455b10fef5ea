import logging

import pytest
from pathlib import Path
from keelson.config.loader import load_config
from keelson.core.context import ClusterContext


def test_load_config_no_file(tmp_path):
    # A missing keelson.yaml means defaults everywhere
    config = load_config(tmp_path / "nonexistent.yaml")
    assert config == {}


def test_load_config_basic(tmp_path):
    config_file = tmp_path / "keelson.yaml"
    config_file.write_text("""
keelson:
  cluster_name: "shop"
reconciler:
  max_parallel_starts: 4
state:
  owner: platform
""")

    config = load_config(config_file)
    assert config["keelson"]["cluster_name"] == "shop"
    assert config["reconciler"]["max_parallel_starts"] == 4
    assert config["state"]["owner"] == "platform"


def test_load_config_interpolation(tmp_path, monkeypatch):
    monkeypatch.setenv("KEELSON_TEST_ENV", "production")
    monkeypatch.delenv("MISSING_VAR", raising=False)

    config_file = tmp_path / "keelson.yaml"
    config_file.write_text("""
keelson:
  env: "${KEELSON_TEST_ENV}"
store:
  state_file: "${STATE_DIR:/var/lib/keelson}/store.json"
state:
  missing: "${MISSING_VAR}"
""")

    config = load_config(config_file)
    assert config["keelson"]["env"] == "production"
    assert config["store"]["state_file"] == "/var/lib/keelson/store.json"
    assert config["state"]["missing"] == ""


def test_load_config_drops_unknown_sections(tmp_path, caplog):
    config_file = tmp_path / "keelson.yaml"
    config_file.write_text("""
unknown_key: true
keelson:
  env: test
""")

    with caplog.at_level(logging.WARNING):
        config = load_config(config_file)

    assert "unknown_key" not in config
    assert config["keelson"]["env"] == "test"
    assert "unknown_key" in caplog.text


def test_load_config_malformed_yaml_raises(tmp_path):
    config_file = tmp_path / "keelson.yaml"
    config_file.write_text("keelson: [unclosed\n")

    with pytest.raises(ValueError):
        load_config(config_file)


def test_load_config_rejects_non_mapping(tmp_path):
    config_file = tmp_path / "keelson.yaml"
    config_file.write_text("- just\n- a list\n")

    with pytest.raises(ValueError):
        load_config(config_file)


def test_context_maps_sections_to_settings(tmp_path):
    config_file = tmp_path / "keelson.yaml"
    config_file.write_text("""
keelson:
  log_level: DEBUG
store:
  event_history_limit: 50
reconciler:
  backoff_base_ms: 250
watch:
  enabled: true
  exclude_patterns: ["drafts/*"]
state:
  team: payments
""")

    context = ClusterContext(config_dict=load_config(config_file))

    assert context.settings.log_level == "DEBUG"
    assert context.store.event_history_limit == 50
    assert context.reconciler.backoff_base_ms == 250
    assert context.reconciler.max_start_attempts == 3
    assert context.watch.enabled is True
    assert context.watch.exclude_patterns == ["drafts/*"]
    assert context.app == {"team": "payments"}
