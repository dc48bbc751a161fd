"""Tests for palette file helpers and color conversion."""

import json

import pytest
from PIL import Image

from utils import (
    PaletteManager,
    ensure_rgb,
    hex_to_rgb,
    load_palettes_from_file,
    parse_hex_colors,
    rgb_to_hex,
    validate_image_file,
)


class TestHexColors:

    def test_hex_to_rgb(self):
        assert hex_to_rgb("#FF0000") == (255, 0, 0)
        assert hex_to_rgb("0f380f") == (15, 56, 15)
        assert hex_to_rgb("  #29adff ") == (41, 173, 255)

    @pytest.mark.parametrize("bad", ["", "#fff", "#12345g", "red", "#1234567"])
    def test_invalid_hex_raises(self, bad):
        with pytest.raises(ValueError):
            hex_to_rgb(bad)

    def test_rgb_to_hex(self):
        assert rgb_to_hex((255, 0, 77)) == "#ff004d"

    def test_parse_hex_colors(self):
        assert parse_hex_colors("#000000, ffffff,") == [(0, 0, 0), (255, 255, 255)]
        assert parse_hex_colors("") == []


class TestPaletteFiles:

    def test_missing_file_gives_empty_list(self, tmp_path):
        assert load_palettes_from_file(str(tmp_path / "none.json")) == []

    def test_malformed_file_gives_empty_list(self, tmp_path):
        path = tmp_path / "palette.json"
        path.write_text("[{")
        assert load_palettes_from_file(str(path)) == []
        path.write_text(json.dumps({"name": "x"}))
        assert load_palettes_from_file(str(path)) == []

    def test_entries_without_colors_are_skipped(self, tmp_path):
        path = tmp_path / "palette.json"
        path.write_text(json.dumps([{"name": "ok", "colors": ["#000000"]}, {"name": "bad"}]))
        assert [p["name"] for p in load_palettes_from_file(str(path))] == ["ok"]

    def test_palette_manager_round_trip(self, tmp_path):
        path = str(tmp_path / "palette.json")
        mgr = PaletteManager(path)
        assert mgr.list_palette_names() == []

        mgr.add_palette("sunset", ["#ff0000", "#ffa500"])
        mgr.add_palette("ice", ["#e0ffff"])
        mgr.add_palette("sunset", ["#ff0000", "#800080"])

        reloaded = PaletteManager(path)
        assert reloaded.list_palette_names() == ["sunset", "ice"]
        assert reloaded.get_palette_colors_rgb("sunset") == [(255, 0, 0), (128, 0, 128)]
        assert reloaded.get_palette_colors_rgb("missing") is None

        reloaded.remove_palette("ice")
        assert PaletteManager(path).list_palette_names() == ["sunset"]

    def test_add_palette_rejects_bad_colors(self, tmp_path):
        mgr = PaletteManager(str(tmp_path / "palette.json"))
        with pytest.raises(ValueError):
            mgr.add_palette("broken", ["#zzzzzz"])
        assert mgr.get_palette("broken") is None


class TestImageHelpers:

    def test_ensure_rgb(self):
        gray = Image.new("L", (3, 2), 128)
        assert ensure_rgb(gray).mode == "RGB"
        rgb = Image.new("RGB", (3, 2))
        assert ensure_rgb(rgb) is rgb

    def test_validate_image_file(self, tmp_path):
        png = tmp_path / "a.png"
        Image.new("RGB", (1, 1)).save(png)
        assert validate_image_file(str(png))
        assert not validate_image_file(str(tmp_path / "b.png"))
        txt = tmp_path / "c.txt"
        txt.write_text("x")
        assert not validate_image_file(str(txt))
