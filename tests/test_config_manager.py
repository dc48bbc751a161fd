"""Tests for ConfigManager."""

import json

from config_manager import ConfigManager


class TestConfigManager:

    def test_defaults_when_file_missing(self, tmp_path):
        path = tmp_path / "config.json"
        config = ConfigManager(str(path))
        assert config.get("defaults", "algorithm") == "floyd-steinberg"
        assert config.get("defaults", "seed") == 42
        assert config.get("defaults", "bayer_size") is None
        # Loading never writes
        assert not path.exists()

    def test_loaded_values_merge_over_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"defaults": {"algorithm": "atkinson", "strength": 0.5}}))
        config = ConfigManager(str(path))
        assert config.get("defaults", "algorithm") == "atkinson"
        assert config.get("defaults", "strength") == 0.5
        assert config.get("defaults", "palette") == "monochrome"
        assert config.get("defaults", "serpentine") is True
        assert config.get("recent_files") == []

    def test_defaults_not_shared_between_instances(self, tmp_path):
        a = ConfigManager(str(tmp_path / "a.json"))
        a.set("defaults", "palette", value="pico8")
        b = ConfigManager(str(tmp_path / "b.json"))
        assert b.get("defaults", "palette") == "monochrome"
        assert ConfigManager.DEFAULT_CONFIG["defaults"]["palette"] == "monochrome"

    def test_invalid_json_falls_back_to_defaults(self, tmp_path, caplog):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        config = ConfigManager(str(path))
        assert config.get("defaults", "algorithm") == "floyd-steinberg"
        assert "Error loading config" in caplog.text

    def test_get_missing_key_returns_default(self, tmp_path):
        config = ConfigManager(str(tmp_path / "config.json"))
        assert config.get("defaults", "nope", default=7) == 7
        assert config.get("defaults", "algorithm", "deeper", default="x") == "x"

    def test_set_creates_nested_keys(self, tmp_path):
        config = ConfigManager(str(tmp_path / "config.json"))
        config.set("extra", "level", value=3)
        assert config.get("extra", "level") == 3
        config.set(value=1)
        assert "value" not in config.config

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "config.json"
        config = ConfigManager(str(path))
        config.set("defaults", "serpentine", value=False)
        assert config.save()
        assert ConfigManager(str(path)).get("defaults", "serpentine") is False

    def test_save_failure_is_not_fatal(self, tmp_path):
        config = ConfigManager(str(tmp_path / "missing_dir" / "config.json"))
        assert config.save() is False

    def test_recent_files(self, tmp_path):
        config = ConfigManager(str(tmp_path / "config.json"))
        files = []
        for i in range(12):
            f = tmp_path / f"img{i}.png"
            f.write_bytes(b"")
            files.append(str(f))
            config.add_recent_file(str(f))
        config.add_recent_file(files[5])

        recent = config.get_recent_files()
        assert len(recent) == 10
        assert recent[0] == files[5]
        assert recent.count(files[5]) == 1

        config.clear_recent_files()
        assert config.get_recent_files() == []

    def test_last_paths(self, tmp_path):
        config = ConfigManager(str(tmp_path / "config.json"))
        config.update_last_path("input", str(tmp_path / "in" / "a.png"))
        assert config.get_last_path("input") == str(tmp_path / "in")
        assert config.get_last_path("save") is None
