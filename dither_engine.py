"""
A Python library that reduces an RGB image to a small fixed palette using
error-diffusion kernels, ordered/threshold matrices, seeded noise fields and a
handful of adaptive schemes.
Use this as a standalone library or import it from your application.
"""

import logging
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from PIL import Image
from scipy import ndimage

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]
KernelTap = Tuple[int, int, float]


# -------------------- Enumerations --------------------

class DitherAlgorithm(Enum):
    FLOYD_STEINBERG = "floyd-steinberg"
    ATKINSON = "atkinson"
    JARVIS_JUDICE_NINKE = "jarvis"
    STUCKI = "stucki"
    BURKES = "burkes"
    SIERRA = "sierra"
    SIERRA_TWO_ROW = "sierra-two"
    SIERRA_LITE = "sierra-lite"
    BAYER2x2 = "bayer-2x2"
    BAYER4x4 = "bayer-4x4"
    BAYER8x8 = "bayer-8x8"
    BAYER16x16 = "bayer-16x16"
    BLUE_NOISE = "blue-noise"
    WHITE_NOISE = "white-noise"
    RANDOM = "random"
    PATTERN = "pattern"
    DOT_DIFFUSION = "dot-diffusion"
    RIEMERSMA = "riemersma"
    GRADIENT_BASED = "gradient"
    VARIABLE_ERROR_DIFFUSION = "variable"
    OSTROMOUKHOV = "ostromoukhov"
    FAN = "fan"
    SHIAU_FAN = "shiau-fan"
    STEVEN_PIGEON = "steven-pigeon"


class PaletteMode(Enum):
    MONOCHROME = "monochrome"
    GRAYSCALE_4 = "gray4"
    GRAYSCALE_8 = "gray8"
    GRAYSCALE_16 = "gray16"
    CGA = "cga"
    EGA = "ega"
    VGA = "vga"
    GAMEBOY = "gameboy"
    PICO8 = "pico8"
    CUSTOM = "custom"


ALGORITHM_LABELS = {
    DitherAlgorithm.FLOYD_STEINBERG: "Floyd-Steinberg",
    DitherAlgorithm.ATKINSON: "Atkinson",
    DitherAlgorithm.JARVIS_JUDICE_NINKE: "Jarvis-Judice-Ninke",
    DitherAlgorithm.STUCKI: "Stucki",
    DitherAlgorithm.BURKES: "Burkes",
    DitherAlgorithm.SIERRA: "Sierra",
    DitherAlgorithm.SIERRA_TWO_ROW: "Sierra Two-Row",
    DitherAlgorithm.SIERRA_LITE: "Sierra Lite",
    DitherAlgorithm.BAYER2x2: "Ordered Bayer 2x2",
    DitherAlgorithm.BAYER4x4: "Ordered Bayer 4x4",
    DitherAlgorithm.BAYER8x8: "Ordered Bayer 8x8",
    DitherAlgorithm.BAYER16x16: "Ordered Bayer 16x16",
    DitherAlgorithm.BLUE_NOISE: "Blue Noise",
    DitherAlgorithm.WHITE_NOISE: "White Noise",
    DitherAlgorithm.RANDOM: "Random",
    DitherAlgorithm.PATTERN: "Pattern",
    DitherAlgorithm.DOT_DIFFUSION: "Dot Diffusion",
    DitherAlgorithm.RIEMERSMA: "Riemersma",
    DitherAlgorithm.GRADIENT_BASED: "Gradient-Based",
    DitherAlgorithm.VARIABLE_ERROR_DIFFUSION: "Variable Error Diffusion",
    DitherAlgorithm.OSTROMOUKHOV: "Ostromoukhov",
    DitherAlgorithm.FAN: "Fan",
    DitherAlgorithm.SHIAU_FAN: "Shiau-Fan",
    DitherAlgorithm.STEVEN_PIGEON: "Steven Pigeon",
}

PALETTE_LABELS = {
    PaletteMode.MONOCHROME: "Monochrome",
    PaletteMode.GRAYSCALE_4: "Grayscale 4",
    PaletteMode.GRAYSCALE_8: "Grayscale 8",
    PaletteMode.GRAYSCALE_16: "Grayscale 16",
    PaletteMode.CGA: "CGA",
    PaletteMode.EGA: "EGA",
    PaletteMode.VGA: "VGA",
    PaletteMode.GAMEBOY: "Game Boy",
    PaletteMode.PICO8: "PICO-8",
    PaletteMode.CUSTOM: "Custom",
}


# -------------------- Parameters --------------------

class DitherParameters:
    """
    Everything a single dither call needs.

    Numeric knobs are stored as given; keeping them in a sensible range is the
    caller's job. ``bayer_size`` of None means "use the size named by the
    Bayer variant". ``custom_palette`` is only consulted when
    ``palette_mode`` is ``PaletteMode.CUSTOM``.
    """
    def __init__(self,
                 algorithm: DitherAlgorithm = DitherAlgorithm.FLOYD_STEINBERG,
                 palette_mode: PaletteMode = PaletteMode.MONOCHROME,
                 strength: float = 1.0,
                 serpentine: bool = True,
                 gamma: float = 1.0,
                 contrast: float = 1.0,
                 brightness: float = 0.0,
                 saturation: float = 1.0,
                 bayer_size: Optional[int] = None,
                 seed: int = 42,
                 custom_palette: Optional[Sequence[Color]] = None):
        self.algorithm = algorithm
        self.palette_mode = palette_mode
        self.strength = strength
        self.serpentine = serpentine
        self.gamma = gamma
        self.contrast = contrast
        self.brightness = brightness
        self.saturation = saturation
        self.bayer_size = bayer_size
        self.seed = seed
        self.custom_palette = [tuple(int(v) for v in c) for c in (custom_palette or [])]

    def as_dict(self) -> Dict:
        return {
            'algorithm': self.algorithm.value,
            'palette': self.palette_mode.value,
            'strength': self.strength,
            'serpentine': self.serpentine,
            'gamma': self.gamma,
            'contrast': self.contrast,
            'brightness': self.brightness,
            'saturation': self.saturation,
            'bayer_size': self.bayer_size,
            'seed': self.seed,
            'custom_palette': [list(c) for c in self.custom_palette],
        }

    def __repr__(self):
        return f"DitherParameters({self.as_dict()!r})"


def make_rng(seed: int) -> np.random.RandomState:
    """A fresh generator for one call; seeds wrap like an unsigned 32-bit int."""
    return np.random.RandomState(int(seed) & 0xFFFFFFFF)


# -------------------- Palettes --------------------

MONOCHROME_PALETTE: Tuple[Color, ...] = ((0, 0, 0), (255, 255, 255))

CGA_PALETTE: Tuple[Color, ...] = (
    (0, 0, 0), (0, 0, 170), (0, 170, 0), (0, 170, 170),
    (170, 0, 0), (170, 0, 170), (170, 85, 0), (170, 170, 170),
    (85, 85, 85), (85, 85, 255), (85, 255, 85), (85, 255, 255),
    (255, 85, 85), (255, 85, 255), (255, 255, 85), (255, 255, 255),
)

GAMEBOY_PALETTE: Tuple[Color, ...] = (
    (15, 56, 15), (48, 98, 48), (139, 172, 15), (155, 188, 15),
)

PICO8_PALETTE: Tuple[Color, ...] = (
    (0, 0, 0), (95, 87, 79), (255, 0, 77), (171, 82, 54),
    (255, 163, 0), (255, 236, 39), (0, 228, 54), (41, 173, 255),
    (131, 118, 156), (255, 119, 168), (255, 204, 170), (41, 54, 111),
    (0, 87, 132), (194, 195, 199), (255, 241, 232), (242, 233, 222),
)


class PaletteCatalog:
    """
    Built-in target palettes. EGA and VGA are accepted identifiers without a
    table of their own and resolve to monochrome, as does anything unknown.
    """

    FIXED_PALETTES = {
        PaletteMode.MONOCHROME: MONOCHROME_PALETTE,
        PaletteMode.CGA: CGA_PALETTE,
        PaletteMode.GAMEBOY: GAMEBOY_PALETTE,
        PaletteMode.PICO8: PICO8_PALETTE,
    }

    GRAYSCALE_LEVELS = {
        PaletteMode.GRAYSCALE_4: 4,
        PaletteMode.GRAYSCALE_8: 8,
        PaletteMode.GRAYSCALE_16: 16,
    }

    @staticmethod
    def grayscale_ramp(levels: int) -> Tuple[Color, ...]:
        values = [i * 255 // (levels - 1) for i in range(levels)]
        return tuple((v, v, v) for v in values)

    @staticmethod
    def get_palette(mode: PaletteMode,
                    custom_palette: Optional[Sequence[Color]] = None) -> Tuple[Color, ...]:
        if not isinstance(mode, PaletteMode):
            return MONOCHROME_PALETTE
        if mode == PaletteMode.CUSTOM:
            if custom_palette:
                return tuple(tuple(int(v) for v in c) for c in custom_palette)
            return MONOCHROME_PALETTE
        if mode in PaletteCatalog.GRAYSCALE_LEVELS:
            return PaletteCatalog.grayscale_ramp(PaletteCatalog.GRAYSCALE_LEVELS[mode])
        return PaletteCatalog.FIXED_PALETTES.get(mode, MONOCHROME_PALETTE)


def palette_to_array(palette: Sequence[Color]) -> np.ndarray:
    return np.array(palette, dtype=np.float32).reshape((-1, 3))


# -------------------- Color Quantization --------------------

_QUANTIZE_CHUNK = 65536


def find_closest_color(color: np.ndarray, palette_arr: np.ndarray) -> np.ndarray:
    """
    Nearest palette entry by squared Euclidean distance.
    Ties go to the entry that comes first in the palette.
    """
    diff = palette_arr - color
    dist = (diff * diff).sum(axis=1)
    return palette_arr[int(np.argmin(dist))]


def quantize_pixels(pixels: np.ndarray, palette_arr: np.ndarray) -> np.ndarray:
    """Vectorized find_closest_color for an (N,3) array."""
    out = np.empty((len(pixels), 3), dtype=np.float32)
    for start in range(0, len(pixels), _QUANTIZE_CHUNK):
        chunk = pixels[start:start + _QUANTIZE_CHUNK]
        diff = chunk[:, None, :] - palette_arr[None, :, :]
        dist = (diff * diff).sum(axis=2)
        out[start:start + len(chunk)] = palette_arr[np.argmin(dist, axis=1)]
    return out


def _working_pixel(value: np.ndarray) -> np.ndarray:
    # 8-bit view of an already clamped working value
    return np.floor(value)


# -------------------- Threshold Matrices --------------------

PATTERN_4x4 = np.array([
    [0.0,    0.5,    0.125,  0.625],
    [0.75,   0.25,   0.875,  0.375],
    [0.1875, 0.6875, 0.0625, 0.5625],
    [0.9375, 0.4375, 0.8125, 0.3125]
], dtype=np.float32)
PATTERN_4x4.setflags(write=False)

DOT_CLASS_MATRIX = np.array([
    [39, 23, 15, 31, 38, 22, 14, 30],
    [24,  7,  1,  9, 25,  8,  2, 10],
    [16,  3, 47, 43, 17,  4, 48, 44],
    [32, 11, 41, 27, 33, 12, 42, 28],
    [37, 21, 13, 29, 40, 26, 18, 34],
    [26,  6,  0,  8, 27,  5, 61, 13],
    [19,  2, 46, 42, 20,  1, 49, 45],
    [35, 10, 40, 26, 36,  9, 43, 25]
], dtype=np.int32)
DOT_CLASS_MATRIX.setflags(write=False)


def _normalize_minmax(arr: np.ndarray) -> np.ndarray:
    if arr.size == 0:
        return np.zeros_like(arr, dtype=np.float32)
    mn = float(arr.min())
    mx = float(arr.max())
    if mx - mn <= 0.0:
        return np.zeros_like(arr, dtype=np.float32)
    return ((arr - mn) / (mx - mn)).astype(np.float32)


def tile_matrix(matrix: np.ndarray, h: int, w: int) -> np.ndarray:
    """Address ``matrix`` with wraparound over an h x w grid."""
    mh, mw = matrix.shape
    rows = np.arange(h)[:, None] % mh
    cols = np.arange(w)[None, :] % mw
    return matrix[rows, cols]


BLUE_NOISE_CACHE_SIZE = 8


@lru_cache(maxsize=BLUE_NOISE_CACHE_SIZE)
def _build_blue_noise(size: int, seed: int) -> np.ndarray:
    rng = make_rng(seed)
    noise = rng.random_sample((size, size)).astype(np.float32)
    noise = ndimage.gaussian_filter(noise, sigma=1.0, mode='mirror', truncate=2.0)
    texture = _normalize_minmax(noise)
    texture.setflags(write=False)
    return texture


class MatrixGenerator:
    """
    Deterministic threshold sources. Results are cached per process
    (the caches do not persist between runs) and handed out read-only.
    Bayer sizes are few and fixed; blue-noise textures are keyed by seed,
    so only the most recent BLUE_NOISE_CACHE_SIZE of them are kept.
    """

    _bayer_cache: Dict[int, np.ndarray] = {}

    BAYER_BASE = np.array([[0, 2], [3, 1]], dtype=np.float32)

    @staticmethod
    def bayer_matrix(size: int) -> np.ndarray:
        cached = MatrixGenerator._bayer_cache.get(size)
        if cached is None:
            cached = MatrixGenerator._build_bayer(size)
            cached.setflags(write=False)
            MatrixGenerator._bayer_cache[size] = cached
        return cached

    @staticmethod
    def _build_bayer(size: int) -> np.ndarray:
        """
        Each quadrant is 4*B + k with B the normalized half-size matrix and
        k = 0, 2, 3, 1 (TL, TR, BL, BR); the result is divided by size**2.
        """
        if size <= 2:
            return MatrixGenerator.BAYER_BASE / 4.0
        half = size // 2
        smaller = MatrixGenerator._build_bayer(half)
        bayer = np.zeros((2 * half, 2 * half), dtype=np.float32)
        bayer[:half, :half] = 4 * smaller + 0
        bayer[:half, half:] = 4 * smaller + 2
        bayer[half:, :half] = 4 * smaller + 3
        bayer[half:, half:] = 4 * smaller + 1
        return bayer / float(size * size)

    @staticmethod
    def blue_noise_texture(size: int = 256, seed: int = 42) -> np.ndarray:
        """
        Approximate blue noise: seeded white noise, 5x5 Gaussian blur
        (sigma 1, mirrored borders), renormalized to [0,1].
        """
        return _build_blue_noise(int(size), int(seed))

    @staticmethod
    def dot_class_thresholds() -> np.ndarray:
        return DOT_CLASS_MATRIX.astype(np.float32) / 64.0


# -------------------- Preprocessing --------------------

def rgb_to_hsv(rgb: np.ndarray) -> np.ndarray:
    """Vectorized RGB->HSV on float arrays (...,3); H, S, V share the input scale, H in [0,1)."""
    r = rgb[..., 0]
    g = rgb[..., 1]
    b = rgb[..., 2]
    maxc = np.maximum(np.maximum(r, g), b)
    minc = np.minimum(np.minimum(r, g), b)
    delta = maxc - minc

    s = np.divide(delta, maxc, out=np.zeros_like(maxc), where=maxc > 0)

    safe = delta > 0
    rc = np.divide(maxc - r, delta, out=np.zeros_like(delta), where=safe)
    gc = np.divide(maxc - g, delta, out=np.zeros_like(delta), where=safe)
    bc = np.divide(maxc - b, delta, out=np.zeros_like(delta), where=safe)

    h = np.where(r == maxc, bc - gc,
                 np.where(g == maxc, 2.0 + rc - bc, 4.0 + gc - rc))
    h = np.where(safe, (h / 6.0) % 1.0, 0.0)

    return np.stack([h, s, maxc], axis=-1).astype(np.float32)


def hsv_to_rgb(hsv: np.ndarray) -> np.ndarray:
    h = hsv[..., 0]
    s = hsv[..., 1]
    v = hsv[..., 2]

    i = np.floor(h * 6.0)
    f = h * 6.0 - i
    p = v * (1.0 - s)
    q = v * (1.0 - s * f)
    t = v * (1.0 - s * (1.0 - f))
    i = i.astype(np.int32) % 6

    conditions = [i == 0, i == 1, i == 2, i == 3, i == 4, i == 5]
    r = np.select(conditions, [v, q, p, p, t, v])
    g = np.select(conditions, [t, v, v, q, p, p])
    b = np.select(conditions, [p, p, t, v, v, q])
    return np.stack([r, g, b], axis=-1).astype(np.float32)


def preprocess_image(image: np.ndarray,
                     contrast: float = 1.0,
                     brightness: float = 0.0,
                     gamma: float = 1.0,
                     saturation: float = 1.0) -> np.ndarray:
    """
    Contrast/brightness, gamma, then saturation, on a [0,1] copy of ``image``.
    Out-of-range values are clamped at the end; the input is left untouched.
    """
    arr = np.asarray(image, dtype=np.float32) / 255.0
    arr = arr * contrast + brightness

    if gamma != 1.0:
        if float(gamma).is_integer():
            arr = np.power(arr, gamma)
        else:
            arr = np.power(np.abs(arr), gamma)

    if saturation != 1.0:
        hsv = rgb_to_hsv(arr)
        hsv[..., 1] *= saturation
        arr = hsv_to_rgb(hsv)

    arr = np.clip(arr, 0.0, 1.0)
    return np.rint(arr * 255.0).astype(np.uint8)


# -------------------- Base Classes for Dithering Strategies --------------------

class BaseDitherStrategy:
    """
    Base class for dithering strategies.
    Each strategy must implement a .dither(pixels, palette_arr, image_size) method
    that returns an array of shape (N,3), the same shape as 'pixels', holding
    only palette colors.
    """
    def dither(self, pixels: np.ndarray, palette_arr: np.ndarray,
               image_size: Tuple[int, int]) -> np.ndarray:
        raise NotImplementedError


# -------------------- Error Diffusion --------------------

FLOYD_STEINBERG_KERNEL: Tuple[KernelTap, ...] = (
    (1, 0, 7 / 16), (-1, 1, 3 / 16), (0, 1, 5 / 16), (1, 1, 1 / 16),
)

KERNELS: Dict[DitherAlgorithm, Tuple[KernelTap, ...]] = {
    DitherAlgorithm.FLOYD_STEINBERG: FLOYD_STEINBERG_KERNEL,
    # six taps of 1/8: a quarter of the error is dropped on purpose
    DitherAlgorithm.ATKINSON: (
        (1, 0, 1 / 8), (2, 0, 1 / 8),
        (-1, 1, 1 / 8), (0, 1, 1 / 8), (1, 1, 1 / 8),
        (0, 2, 1 / 8),
    ),
    DitherAlgorithm.JARVIS_JUDICE_NINKE: (
        (1, 0, 7 / 48), (2, 0, 5 / 48),
        (-2, 1, 3 / 48), (-1, 1, 5 / 48), (0, 1, 7 / 48), (1, 1, 5 / 48), (2, 1, 3 / 48),
        (-2, 2, 1 / 48), (-1, 2, 3 / 48), (0, 2, 5 / 48), (1, 2, 3 / 48), (2, 2, 1 / 48),
    ),
    DitherAlgorithm.STUCKI: (
        (1, 0, 8 / 42), (2, 0, 4 / 42),
        (-2, 1, 2 / 42), (-1, 1, 4 / 42), (0, 1, 8 / 42), (1, 1, 4 / 42), (2, 1, 2 / 42),
        (-2, 2, 1 / 42), (-1, 2, 2 / 42), (0, 2, 4 / 42), (1, 2, 2 / 42), (2, 2, 1 / 42),
    ),
    DitherAlgorithm.BURKES: (
        (1, 0, 8 / 32), (2, 0, 4 / 32),
        (-2, 1, 2 / 32), (-1, 1, 4 / 32), (0, 1, 8 / 32), (1, 1, 4 / 32), (2, 1, 2 / 32),
    ),
    DitherAlgorithm.SIERRA: (
        (1, 0, 5 / 32), (2, 0, 3 / 32),
        (-2, 1, 2 / 32), (-1, 1, 4 / 32), (0, 1, 5 / 32), (1, 1, 4 / 32), (2, 1, 2 / 32),
        (-1, 2, 2 / 32), (0, 2, 3 / 32), (1, 2, 2 / 32),
    ),
    DitherAlgorithm.SIERRA_TWO_ROW: (
        (1, 0, 4 / 16), (2, 0, 3 / 16),
        (-2, 1, 1 / 16), (-1, 1, 2 / 16), (0, 1, 3 / 16), (1, 1, 2 / 16), (2, 1, 1 / 16),
    ),
    DitherAlgorithm.SIERRA_LITE: (
        (1, 0, 2 / 4),
        (-1, 1, 1 / 4), (0, 1, 1 / 4),
    ),
    DitherAlgorithm.FAN: (
        (1, 0, 7 / 16), (0, 1, 1 / 16), (1, 1, 5 / 16), (-1, 1, 3 / 16),
    ),
    DitherAlgorithm.SHIAU_FAN: (
        (1, 0, 4 / 16), (2, 0, 1 / 16),
        (-2, 1, 1 / 16), (-1, 1, 1 / 16), (0, 1, 2 / 16), (1, 1, 4 / 16), (2, 1, 2 / 16),
    ),
    DitherAlgorithm.STEVEN_PIGEON: (
        (1, 0, 2 / 14), (2, 0, 1 / 14),
        (-2, 1, 1 / 14), (-1, 1, 2 / 14), (0, 1, 2 / 14), (1, 1, 2 / 14), (2, 1, 1 / 14),
        (-1, 2, 1 / 14), (0, 2, 1 / 14), (1, 2, 1 / 14),
    ),
}


def kernel_weight_sum(kernel: Sequence[KernelTap]) -> float:
    return float(sum(weight for _, _, weight in kernel))


class ErrorDiffusionDitherStrategy(BaseDitherStrategy):
    """
    Generic scanline error diffusion.

    For every pixel in scan order: add the accumulated error, clamp to
    [0,255], pick the nearest palette color, then push
    ``error * weight * strength`` to each kernel tap that lands inside the
    image. With ``serpentine`` on, odd rows run right-to-left and the taps'
    dx is mirrored for those rows.

    Subclasses adapt the pass through ``_prepare``, ``_pixel_strength`` and
    ``_pixel_weights``.
    """
    def __init__(self, kernel: Sequence[KernelTap] = FLOYD_STEINBERG_KERNEL,
                 strength: float = 1.0, serpentine: bool = False):
        self.kernel = tuple(kernel)
        self.strength = strength
        self.serpentine = serpentine
        self._weights = tuple(weight for _, _, weight in self.kernel)

    def _prepare(self, work_2d: np.ndarray):
        """Per-call setup before the scan; ``work_2d`` is the (h,w,3) input."""

    def _pixel_strength(self, y: int, x: int) -> float:
        return self.strength

    def _pixel_weights(self, y: int, x: int, value: np.ndarray) -> Sequence[float]:
        return self._weights

    def dither(self, pixels: np.ndarray, palette_arr: np.ndarray,
               image_size: Tuple[int, int]) -> np.ndarray:
        h, w = image_size
        work_2d = pixels.reshape((h, w, 3)).astype(np.float32)
        result = np.empty((h, w, 3), dtype=np.float32)
        errors = np.zeros((h, w, 3), dtype=np.float32)
        self._prepare(work_2d)

        for y in range(h):
            if self.serpentine and y % 2 == 1:
                x_range = range(w - 1, -1, -1)
                direction = -1
            else:
                x_range = range(w)
                direction = 1

            for x in x_range:
                value = np.clip(work_2d[y, x] + errors[y, x], 0.0, 255.0)
                chosen = find_closest_color(_working_pixel(value), palette_arr)
                result[y, x] = chosen
                err = value - chosen

                strength = self._pixel_strength(y, x)
                weights = self._pixel_weights(y, x, value)
                for (dx, dy, _), weight in zip(self.kernel, weights):
                    nx = x + dx * direction
                    ny = y + dy
                    if 0 <= nx < w and 0 <= ny < h:
                        errors[ny, nx] += err * weight * strength

        return result.reshape((-1, 3))


# -------------------- Adaptive Error Diffusion --------------------

class GradientBasedDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Floyd–Steinberg whose strength follows local detail:
    strength * (0.5 + 0.5 * g), g being the normalized Sobel magnitude.
    """
    def __init__(self, strength: float = 1.0, serpentine: bool = False):
        super().__init__(FLOYD_STEINBERG_KERNEL, strength, serpentine)
        self._gradient = None

    @staticmethod
    def gradient_map(work_2d: np.ndarray) -> np.ndarray:
        gray = np.rint(0.299 * work_2d[:, :, 0]
                       + 0.587 * work_2d[:, :, 1]
                       + 0.114 * work_2d[:, :, 2]).astype(np.float32)
        if gray.size == 0:
            return np.zeros(gray.shape, dtype=np.float32)
        grad_x = ndimage.sobel(gray, axis=1, mode='mirror')
        grad_y = ndimage.sobel(gray, axis=0, mode='mirror')
        return _normalize_minmax(np.hypot(grad_x, grad_y))

    def _prepare(self, work_2d: np.ndarray):
        self._gradient = self.gradient_map(work_2d)

    def _pixel_strength(self, y: int, x: int) -> float:
        return self.strength * (0.5 + 0.5 * float(self._gradient[y, x]))


class VariableErrorDiffusionDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Floyd–Steinberg with all four weights of a pixel scaled by one random
    factor in [0.7, 1.3), drawn from a generator seeded at the start of the call.
    """
    FACTOR_RANGE = (0.7, 1.3)

    def __init__(self, strength: float = 1.0, serpentine: bool = False, seed: int = 42):
        super().__init__(FLOYD_STEINBERG_KERNEL, strength, serpentine)
        self.seed = seed
        self._factors = None

    def _prepare(self, work_2d: np.ndarray):
        h, w = work_2d.shape[:2]
        rng = make_rng(self.seed)
        low, high = self.FACTOR_RANGE
        self._factors = rng.uniform(low, high, size=(h, w)).astype(np.float32)

    def _pixel_weights(self, y: int, x: int, value: np.ndarray) -> Sequence[float]:
        factor = float(self._factors[y, x])
        return [weight * factor for weight in self._weights]


class OstromoukhovDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Simplified Ostromoukhov: the right and down-left weights slide from 7:3
    to 3:7 as intensity goes from dark to light; down and down-right stay at
    5 and 1. All four are renormalized to sum to one.
    """
    def __init__(self, strength: float = 1.0, serpentine: bool = False):
        super().__init__(FLOYD_STEINBERG_KERNEL, strength, serpentine)

    def _pixel_weights(self, y: int, x: int, value: np.ndarray) -> Sequence[float]:
        intensity = float(value[0] + value[1] + value[2]) / (3.0 * 255.0)
        w1 = 7.0 * (1.0 - intensity) + 3.0 * intensity
        w2 = 3.0 * (1.0 - intensity) + 7.0 * intensity
        w3 = 5.0
        w4 = 1.0
        total = w1 + w2 + w3 + w4
        return [w1 / total, w2 / total, w3 / total, w4 / total]


# -------------------- Threshold Dithering --------------------

class ThresholdDitherStrategy(BaseDitherStrategy):
    """
    Perturb each pixel by (t*255 - 127.5) * strength, t in [0,1] from
    threshold_map(), clamp and quantize. No error is carried between pixels.
    """
    def __init__(self, strength: float = 1.0):
        self.strength = strength

    def threshold_map(self, h: int, w: int) -> np.ndarray:
        raise NotImplementedError

    def dither(self, pixels: np.ndarray, palette_arr: np.ndarray,
               image_size: Tuple[int, int]) -> np.ndarray:
        h, w = image_size
        thresh = self.threshold_map(h, w).astype(np.float32).reshape((-1, 1))
        adjusted = pixels.astype(np.float32) + (thresh * 255.0 - 127.5) * self.strength
        np.clip(adjusted, 0.0, 255.0, out=adjusted)
        return quantize_pixels(_working_pixel(adjusted), palette_arr)


class OrderedDitherStrategy(ThresholdDitherStrategy):
    """Bayer ordered dithering with a recursively built size x size matrix."""
    def __init__(self, size: int = 8, strength: float = 1.0):
        super().__init__(strength)
        self.size = size

    def threshold_map(self, h: int, w: int) -> np.ndarray:
        return tile_matrix(MatrixGenerator.bayer_matrix(self.size), h, w)


class BlueNoiseDitherStrategy(ThresholdDitherStrategy):
    """Threshold against a seeded 256x256 blurred-noise texture, tiled."""
    TEXTURE_SIZE = 256

    def __init__(self, seed: int = 42, strength: float = 1.0):
        super().__init__(strength)
        self.seed = seed

    def threshold_map(self, h: int, w: int) -> np.ndarray:
        texture = MatrixGenerator.blue_noise_texture(self.TEXTURE_SIZE, self.seed)
        return tile_matrix(texture, h, w)


class WhiteNoiseDitherStrategy(ThresholdDitherStrategy):
    """
    One uniform [0,1) draw per pixel, row-major, from a generator seeded per call.
    Also serves the "random" algorithm, which is the same thing.
    """
    def __init__(self, seed: int = 42, strength: float = 1.0):
        super().__init__(strength)
        self.seed = seed

    def threshold_map(self, h: int, w: int) -> np.ndarray:
        rng = make_rng(self.seed)
        return rng.random_sample((h, w)).astype(np.float32)


class PatternDitherStrategy(ThresholdDitherStrategy):
    def threshold_map(self, h: int, w: int) -> np.ndarray:
        return tile_matrix(PATTERN_4x4, h, w)


class DotDiffusionDitherStrategy(BaseDitherStrategy):
    """
    Dot diffusion driven by the 8x8 class matrix. The class value only acts
    as a threshold offset, (t*128 - 64) * strength; the error grid is read
    for every pixel but no pass ever writes to it, so it stays zero.
    """
    def __init__(self, strength: float = 1.0):
        self.strength = strength

    def dither(self, pixels: np.ndarray, palette_arr: np.ndarray,
               image_size: Tuple[int, int]) -> np.ndarray:
        h, w = image_size
        work_2d = pixels.reshape((h, w, 3)).astype(np.float32)
        result = np.empty((h, w, 3), dtype=np.float32)
        errors = np.zeros((h, w, 3), dtype=np.float32)
        thresholds = MatrixGenerator.dot_class_thresholds()

        for y in range(h):
            for x in range(w):
                t = float(thresholds[y % 8, x % 8])
                value = work_2d[y, x] + errors[y, x]
                value = value + (t * 128.0 - 64.0) * self.strength
                value = np.clip(value, 0.0, 255.0)
                result[y, x] = find_closest_color(_working_pixel(value), palette_arr)

        return result.reshape((-1, 3))


# -------------------- Riemersma (serpentine approximation) --------------------

class RiemersmaDitherStrategy(BaseDitherStrategy):
    """
    Serpentine scan carrying one decaying error triple instead of an error
    grid: value = pixel + carried*strength, then carried = (value - chosen)*0.8.
    The carry runs on across row ends.
    """
    DECAY = 0.8

    def __init__(self, strength: float = 1.0):
        self.strength = strength

    def dither(self, pixels: np.ndarray, palette_arr: np.ndarray,
               image_size: Tuple[int, int]) -> np.ndarray:
        h, w = image_size
        work_2d = pixels.reshape((h, w, 3)).astype(np.float32)
        result = np.empty((h, w, 3), dtype=np.float32)
        carried = np.zeros(3, dtype=np.float32)

        for y in range(h):
            x_range = range(w - 1, -1, -1) if y % 2 == 1 else range(w)
            for x in x_range:
                value = np.clip(work_2d[y, x] + carried * self.strength, 0.0, 255.0)
                chosen = find_closest_color(_working_pixel(value), palette_arr)
                result[y, x] = chosen
                carried = (value - chosen) * self.DECAY

        return result.reshape((-1, 3))


# -------------------- Dispatcher --------------------

BAYER_SIZES = {
    DitherAlgorithm.BAYER2x2: 2,
    DitherAlgorithm.BAYER4x4: 4,
    DitherAlgorithm.BAYER8x8: 8,
    DitherAlgorithm.BAYER16x16: 16,
}


def get_dither_strategy(params: DitherParameters) -> BaseDitherStrategy:
    """Build a fresh strategy object for one call."""
    algo = params.algorithm
    if algo in KERNELS:
        return ErrorDiffusionDitherStrategy(KERNELS[algo], params.strength, params.serpentine)
    elif algo in BAYER_SIZES:
        size = params.bayer_size or BAYER_SIZES[algo]
        return OrderedDitherStrategy(size, params.strength)
    elif algo == DitherAlgorithm.BLUE_NOISE:
        return BlueNoiseDitherStrategy(params.seed, params.strength)
    elif algo in (DitherAlgorithm.WHITE_NOISE, DitherAlgorithm.RANDOM):
        return WhiteNoiseDitherStrategy(params.seed, params.strength)
    elif algo == DitherAlgorithm.PATTERN:
        return PatternDitherStrategy(params.strength)
    elif algo == DitherAlgorithm.DOT_DIFFUSION:
        return DotDiffusionDitherStrategy(params.strength)
    elif algo == DitherAlgorithm.RIEMERSMA:
        return RiemersmaDitherStrategy(params.strength)
    elif algo == DitherAlgorithm.GRADIENT_BASED:
        return GradientBasedDitherStrategy(params.strength, params.serpentine)
    elif algo == DitherAlgorithm.VARIABLE_ERROR_DIFFUSION:
        return VariableErrorDiffusionDitherStrategy(params.strength, params.serpentine, params.seed)
    elif algo == DitherAlgorithm.OSTROMOUKHOV:
        return OstromoukhovDitherStrategy(params.strength, params.serpentine)
    else:
        raise ValueError(f"Unrecognized DitherAlgorithm: {algo}")


# -------------------- Image Ditherer --------------------

class ImageDitherer:
    """
    Orchestrates palette lookup, preprocessing and the chosen strategy.
    """
    def __init__(self, params: Optional[DitherParameters] = None):
        self.params = params if params is not None else DitherParameters()

    def get_palette(self) -> Tuple[Color, ...]:
        return PaletteCatalog.get_palette(self.params.palette_mode, self.params.custom_palette)

    def dither_array(self, image: np.ndarray) -> np.ndarray:
        """
        Dither an (H,W,3) uint8 RGB array. Returns a new (H,W,3) uint8 array
        whose pixels are all members of the active palette.
        """
        params = self.params
        arr = np.asarray(image, dtype=np.uint8)
        h, w = arr.shape[:2]

        palette_arr = palette_to_array(self.get_palette())
        prepped = preprocess_image(arr, contrast=params.contrast,
                                   brightness=params.brightness,
                                   gamma=params.gamma,
                                   saturation=params.saturation)

        strategy = get_dither_strategy(params)
        logger.debug("Dithering %dx%d with %s (%d colors)",
                     w, h, type(strategy).__name__, len(palette_arr))

        flat_pixels = prepped.reshape((-1, 3)).astype(np.float32)
        dithered_flat = strategy.dither(flat_pixels, palette_arr, (h, w))
        return dithered_flat.reshape((h, w, 3)).astype(np.uint8)

    def apply_dithering(self, image: Image.Image) -> Image.Image:
        arr = np.array(image.convert('RGB'), dtype=np.uint8)
        return Image.fromarray(self.dither_array(arr), 'RGB')


def dither_image(image: np.ndarray, params: Optional[DitherParameters] = None) -> np.ndarray:
    """Dither a raw (H,W,3) uint8 buffer; see ImageDitherer.dither_array."""
    return ImageDitherer(params).dither_array(image)
