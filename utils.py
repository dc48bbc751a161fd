"""
Utility functions for the dithering tools: custom palette files, hex color
conversion and image file checks.
"""

import json
import logging
import os
import re
from typing import List, Tuple, Dict, Optional

from PIL import Image

__all__ = [
    # Functions
    'load_palettes_from_file',
    'save_palettes_to_file',
    'hex_to_rgb',
    'rgb_to_hex',
    'palette_from_hex_list',
    'parse_hex_colors',
    'validate_image_file',
    'ensure_rgb',
    # Classes
    'PaletteManager',
]

logger = logging.getLogger(__name__)

_HEX_COLOR_RE = re.compile(r'^#?[0-9a-fA-F]{6}$')

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}
VIDEO_EXTENSIONS = {'.mp4', '.avi', '.mov', '.mkv', '.webm', '.flv', '.wmv'}


def load_palettes_from_file(filepath: str = "palette.json") -> List[Dict]:
    """
    Load custom palettes from JSON file.

    Args:
        filepath: Path to palette JSON file

    Returns:
        List of palette dictionaries with 'name' and 'colors' keys.
        A missing or unreadable file gives an empty list.
    """
    if not os.path.exists(filepath):
        return []

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            palettes = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Error loading palettes from {filepath}: {e}")
        return []

    if not isinstance(palettes, list):
        logger.warning(f"Ignoring {filepath}: expected a list of palettes")
        return []
    return [p for p in palettes if isinstance(p, dict) and 'name' in p and 'colors' in p]


def save_palettes_to_file(palettes: List[Dict], filepath: str = "palette.json") -> bool:
    """Write palettes as JSON; returns False (and logs) on failure."""
    try:
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(palettes, f, indent=4)
        return True
    except OSError as e:
        logger.error(f"Error saving palettes to {filepath}: {e}")
        return False


def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """
    Convert hex color string to RGB tuple.

    Args:
        hex_color: Hex string like "#FF0000" or "FF0000"

    Returns:
        RGB tuple (r, g, b)

    Raises:
        ValueError: if the string is not a 6-digit hex color
    """
    hex_color = hex_color.strip()
    if not _HEX_COLOR_RE.match(hex_color):
        raise ValueError(f"Invalid hex color: {hex_color!r}")
    hex_color = hex_color.lstrip('#')
    return tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))


def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    return f'#{rgb[0]:02x}{rgb[1]:02x}{rgb[2]:02x}'


def palette_from_hex_list(hex_list: List[str]) -> List[Tuple[int, int, int]]:
    return [hex_to_rgb(h) for h in hex_list]


def parse_hex_colors(text: str) -> List[Tuple[int, int, int]]:
    """Parse a comma-separated list such as "#000000,#ff0000,ffffff"."""
    items = [item for item in (part.strip() for part in text.split(',')) if item]
    return palette_from_hex_list(items)


def validate_image_file(filepath: str) -> bool:
    """True if ``filepath`` exists and has a known image extension."""
    ext = os.path.splitext(filepath)[1].lower()
    return ext in IMAGE_EXTENSIONS and os.path.exists(filepath)


def ensure_rgb(image: Image.Image) -> Image.Image:
    if image.mode != 'RGB':
        return image.convert('RGB')
    return image


class PaletteManager:
    """
    Manages custom palettes stored in a JSON file (palette.json by default).
    """

    def __init__(self, filepath: str = "palette.json"):
        self.filepath = filepath
        self.palettes = []
        self.load()

    def load(self):
        self.palettes = load_palettes_from_file(self.filepath)

    def save(self) -> bool:
        return save_palettes_to_file(self.palettes, self.filepath)

    def add_palette(self, name: str, colors: List[str]):
        """Add a new palette, or replace the colors of an existing one."""
        # Validate before touching the file
        palette_from_hex_list(colors)

        for pal in self.palettes:
            if pal['name'] == name:
                pal['colors'] = colors
                self.save()
                return

        self.palettes.append({'name': name, 'colors': colors})
        self.save()

    def remove_palette(self, name: str):
        self.palettes = [p for p in self.palettes if p['name'] != name]
        self.save()

    def get_palette(self, name: str) -> Optional[Dict]:
        for pal in self.palettes:
            if pal['name'] == name:
                return pal
        return None

    def get_palette_colors_rgb(self, name: str) -> Optional[List[Tuple[int, int, int]]]:
        """Get palette colors as RGB tuples (None if no such palette)."""
        pal = self.get_palette(name)
        if pal:
            return palette_from_hex_list(pal['colors'])
        return None

    def list_palette_names(self) -> List[str]:
        return [p['name'] for p in self.palettes]
