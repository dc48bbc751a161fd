"""Tests for the palette catalog and nearest-color quantization."""

import numpy as np

from dither_engine import (
    CGA_PALETTE,
    GAMEBOY_PALETTE,
    MONOCHROME_PALETTE,
    PICO8_PALETTE,
    PaletteCatalog,
    PaletteMode,
    find_closest_color,
    palette_to_array,
    quantize_pixels,
)


class TestPaletteCatalog:

    def test_monochrome(self):
        assert PaletteCatalog.get_palette(PaletteMode.MONOCHROME) == ((0, 0, 0), (255, 255, 255))

    def test_grayscale_ramps(self):
        assert PaletteCatalog.get_palette(PaletteMode.GRAYSCALE_4) == (
            (0, 0, 0), (85, 85, 85), (170, 170, 170), (255, 255, 255))
        gray8 = [c[0] for c in PaletteCatalog.get_palette(PaletteMode.GRAYSCALE_8)]
        assert gray8 == [0, 36, 72, 109, 145, 182, 218, 255]
        gray16 = [c[0] for c in PaletteCatalog.get_palette(PaletteMode.GRAYSCALE_16)]
        assert gray16 == [i * 17 for i in range(16)]

    def test_fixed_palettes(self):
        assert PaletteCatalog.get_palette(PaletteMode.CGA) == CGA_PALETTE
        assert PaletteCatalog.get_palette(PaletteMode.GAMEBOY) == GAMEBOY_PALETTE
        assert PaletteCatalog.get_palette(PaletteMode.PICO8) == PICO8_PALETTE
        assert len(CGA_PALETTE) == 16
        assert (170, 85, 0) in CGA_PALETTE
        assert len(PICO8_PALETTE) == 16
        assert len(GAMEBOY_PALETTE) == 4

    def test_ega_and_vga_resolve_to_monochrome(self):
        assert PaletteCatalog.get_palette(PaletteMode.EGA) == MONOCHROME_PALETTE
        assert PaletteCatalog.get_palette(PaletteMode.VGA) == MONOCHROME_PALETTE

    def test_custom_palette(self):
        colors = [(10, 20, 30), (200, 100, 0)]
        assert PaletteCatalog.get_palette(PaletteMode.CUSTOM, colors) == ((10, 20, 30), (200, 100, 0))

    def test_empty_custom_falls_back_to_monochrome(self):
        assert PaletteCatalog.get_palette(PaletteMode.CUSTOM, []) == MONOCHROME_PALETTE
        assert PaletteCatalog.get_palette(PaletteMode.CUSTOM) == MONOCHROME_PALETTE

    def test_unknown_mode_falls_back_to_monochrome(self):
        assert PaletteCatalog.get_palette("sepia") == MONOCHROME_PALETTE


class TestQuantization:

    def test_exact_match(self):
        pal = palette_to_array(PICO8_PALETTE)
        chosen = find_closest_color(np.array([255, 0, 77], dtype=np.float32), pal)
        np.testing.assert_array_equal(chosen, [255, 0, 77])

    def test_nearest_by_squared_distance(self):
        pal = palette_to_array(MONOCHROME_PALETTE)
        np.testing.assert_array_equal(find_closest_color(np.array([127, 127, 127]), pal), [0, 0, 0])
        np.testing.assert_array_equal(find_closest_color(np.array([128, 128, 128]), pal), [255, 255, 255])

    def test_tie_goes_to_first_entry(self):
        pal = palette_to_array([(2, 2, 2), (0, 0, 0)])
        chosen = find_closest_color(np.array([1, 1, 1], dtype=np.float32), pal)
        np.testing.assert_array_equal(chosen, [2, 2, 2])

        out = quantize_pixels(np.array([[1, 1, 1]], dtype=np.float32), pal)
        np.testing.assert_array_equal(out, [[2, 2, 2]])

    def test_vectorized_matches_scalar(self):
        pal = palette_to_array(CGA_PALETTE)
        pixels = np.random.RandomState(0).randint(0, 256, size=(200, 3)).astype(np.float32)
        vectorized = quantize_pixels(pixels, pal)
        scalar = np.array([find_closest_color(p, pal) for p in pixels])
        np.testing.assert_array_equal(vectorized, scalar)
