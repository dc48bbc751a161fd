#!/usr/bin/env python3
"""
CLI module for the dither engine - Command-Line Interface

Dithers a single image, or a video frame by frame, to a fixed palette.
Settings come from command-line flags, falling back to the "defaults"
section of a JSON config file. Uses Rich for terminal output.
"""

import sys
import json
import logging
import argparse
import time
from pathlib import Path
from typing import Optional, List, Tuple, Dict, Any

# Rich imports for terminal output
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn

# Local imports
from dither_engine import (
    ALGORITHM_LABELS,
    PALETTE_LABELS,
    DitherAlgorithm,
    DitherParameters,
    ImageDitherer,
    PaletteCatalog,
    PaletteMode,
)
from utils import (
    VIDEO_EXTENSIONS,
    PaletteManager,
    ensure_rgb,
    parse_hex_colors,
    rgb_to_hex,
    validate_image_file,
)
from config_manager import ConfigManager
from video_processor import VideoProcessingError, VideoProcessor
from PIL import Image


# Initialize Rich console
console = Console()

# Logger instance
logger = logging.getLogger('dither_cli')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for terminal output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers
    )

    logger.setLevel(level)
    logging.getLogger('dither_engine').setLevel(level)
    logging.getLogger('video_processor').setLevel(level)
    return logger


class CLIProgressCallback:
    """
    Rich progress bar fed by VideoProcessor's (fraction, message) callback.
    """

    def __init__(self, disable: bool = False):
        self.disable = disable
        self.progress = None
        self.task = None

    def __enter__(self):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            disable=self.disable
        )
        self.progress.__enter__()
        self.task = self.progress.add_task("Processing video...", total=100)
        return self

    def __exit__(self, *args):
        if self.progress:
            self.progress.__exit__(*args)

    def update(self, fraction: float, message: str):
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=fraction * 100, description=message)


# ==================== Config Schema & Validation ====================

ALGORITHM_NAMES = [algo.value for algo in DitherAlgorithm]
PALETTE_NAMES = [mode.value for mode in PaletteMode if mode != PaletteMode.CUSTOM]

NUMERIC_FIELDS = ["strength", "gamma", "contrast", "brightness", "saturation"]


class ConfigValidationError(Exception):
    """Raised when config or command-line validation fails."""
    pass


def parse_algorithm(name: str) -> DitherAlgorithm:
    """Algorithm by CLI name; unknown names fall back to Floyd-Steinberg."""
    try:
        return DitherAlgorithm(name.strip().lower())
    except ValueError:
        logger.warning(f"Unknown algorithm: [yellow]{name}[/], using floyd-steinberg")
        return DitherAlgorithm.FLOYD_STEINBERG


def parse_palette(name: str) -> PaletteMode:
    """Palette by CLI name; unknown names fall back to monochrome."""
    try:
        mode = PaletteMode(name.strip().lower())
    except ValueError:
        mode = None
    if mode is None or mode == PaletteMode.CUSTOM:
        logger.warning(f"Unknown palette: [yellow]{name}[/], using monochrome")
        return PaletteMode.MONOCHROME
    return mode


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_bayer_size(size: Any) -> Optional[int]:
    if size is None:
        return None
    if not isinstance(size, int) or isinstance(size, bool) or size < 2 or size & (size - 1):
        raise ConfigValidationError(f"Invalid Bayer size: {size!r} (must be a power of two >= 2)")
    return size


def validate_defaults(defaults: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check the "defaults" section of a config file.

    Raises:
        ConfigValidationError: listing every invalid field
    """
    errors = []

    for field in NUMERIC_FIELDS:
        if field in defaults and not _is_number(defaults[field]):
            errors.append(f"'defaults.{field}' must be a number")

    if "serpentine" in defaults and not isinstance(defaults["serpentine"], bool):
        errors.append("'defaults.serpentine' must be true or false")

    seed = defaults.get("seed")
    if seed is not None and (not isinstance(seed, int) or isinstance(seed, bool)):
        errors.append("'defaults.seed' must be an integer")

    for field in ("algorithm", "palette"):
        if field in defaults and not isinstance(defaults[field], str):
            errors.append(f"'defaults.{field}' must be a string")

    try:
        validate_bayer_size(defaults.get("bayer_size"))
    except ConfigValidationError as e:
        errors.append(str(e))

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    return defaults


def load_config(config_path: Path) -> ConfigManager:
    """
    Load and validate a JSON config file.

    Raises:
        ConfigValidationError: If the file is missing, not JSON, or invalid
    """
    if not config_path.exists():
        raise ConfigValidationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in config file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load config file: {e}")

    if not isinstance(raw, dict):
        raise ConfigValidationError("Config file must contain a JSON object")

    config = ConfigManager(str(config_path))
    validate_defaults(config.get("defaults", default={}))
    return config


# ==================== Parameter Setup ====================

def resolve_custom_palette(args: argparse.Namespace) -> Optional[List[Tuple[int, int, int]]]:
    """
    Colors from --colors or --custom-palette, or None when neither is given.

    Raises:
        ConfigValidationError: on malformed colors or an unknown palette name
    """
    if args.colors:
        try:
            colors = parse_hex_colors(args.colors)
        except ValueError as e:
            raise ConfigValidationError(str(e))
        if not colors:
            raise ConfigValidationError("--colors needs at least one hex color")
        return colors

    if args.custom_palette:
        palette_mgr = PaletteManager(args.palette_file)
        try:
            colors = palette_mgr.get_palette_colors_rgb(args.custom_palette)
        except ValueError as e:
            raise ConfigValidationError(f"Palette '{args.custom_palette}': {e}")
        if colors is None:
            names = ", ".join(palette_mgr.list_palette_names()) or "none"
            raise ConfigValidationError(
                f"Custom palette not found: '{args.custom_palette}' (available: {names})")
        return colors

    return None


def build_parameters(args: argparse.Namespace, defaults: Dict[str, Any]) -> DitherParameters:
    """Command-line flags win over config defaults."""
    def pick(name: str, fallback: Any) -> Any:
        value = getattr(args, name)
        if value is not None:
            return value
        return defaults.get(name, fallback)

    algorithm = parse_algorithm(pick("algorithm", "floyd-steinberg"))
    custom_palette = resolve_custom_palette(args)
    if custom_palette is not None:
        palette_mode = PaletteMode.CUSTOM
    else:
        palette_mode = parse_palette(pick("palette", "monochrome"))

    return DitherParameters(
        algorithm=algorithm,
        palette_mode=palette_mode,
        strength=float(pick("strength", 1.0)),
        serpentine=bool(pick("serpentine", True)),
        gamma=float(pick("gamma", 1.0)),
        contrast=float(pick("contrast", 1.0)),
        brightness=float(pick("brightness", 0.0)),
        saturation=float(pick("saturation", 1.0)),
        bayer_size=validate_bayer_size(pick("bayer_size", None)),
        seed=int(pick("seed", 42)),
        custom_palette=custom_palette,
    )


# ==================== Image Processing ====================

def process_single_image(input_path: Path, output_path: Path, params: DitherParameters) -> bool:
    """
    Load, dither and save one image.

    Returns:
        True if successful, False otherwise
    """
    try:
        logger.info(f"Loading image: [cyan]{input_path.name}[/]")
        with Image.open(input_path) as img:
            image = ensure_rgb(img)
            image.load()

        logger.info(f"Image size: [cyan]{image.size[0]}x{image.size[1]}[/]")
        logger.info(f"Algorithm: [yellow]{ALGORITHM_LABELS[params.algorithm]}[/]")
        logger.info(f"Palette: [yellow]{PALETTE_LABELS[params.palette_mode]}[/]")
        logger.debug(f"Parameters: {params.as_dict()}")

        start = time.perf_counter()
        result = ImageDitherer(params).apply_dithering(image)
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        logger.info(f"[green]✓[/] Dithering complete ({elapsed_ms:.0f} ms)")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Saving to: [cyan]{output_path}[/]")
        result.save(output_path)

        size_kb = output_path.stat().st_size / 1024
        logger.info(f"[bold green]✓ Image saved successfully![/] ({size_kb:.1f} KB)")
        return True

    except (OSError, ValueError) as e:
        logger.error(f"Failed to process image: {e}", exc_info=True)
        return False


def detect_mode(input_path: Path) -> str:
    """
    "image" or "video", from the input's extension.

    Raises:
        ConfigValidationError: for an extension that is neither
    """
    ext = input_path.suffix.lower()
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if validate_image_file(str(input_path)):
        return "image"
    raise ConfigValidationError(f"Cannot determine mode for file extension: {ext or '(none)'}")


def process_single_video(input_path: Path, output_path: Path, params: DitherParameters,
                         show_progress: bool = True) -> bool:
    """
    Dither every frame of a video and re-encode it.

    Returns:
        True if successful, False otherwise
    """
    logger.info(f"Processing video: [cyan]{input_path.name}[/]")
    logger.info(f"Algorithm: [yellow]{ALGORITHM_LABELS[params.algorithm]}[/]")
    logger.info(f"Palette: [yellow]{PALETTE_LABELS[params.palette_mode]}[/]")
    logger.debug(f"Parameters: {params.as_dict()}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    progress_callback = CLIProgressCallback(disable=not show_progress)
    video_processor = VideoProcessor(progress_callback=progress_callback.update)

    try:
        start = time.perf_counter()
        with progress_callback:
            info = video_processor.process_video(str(input_path), str(output_path), params)
        elapsed = time.perf_counter() - start
    except (VideoProcessingError, OSError, ValueError) as e:
        logger.error(f"Failed to process video: {e}")
        return False

    logger.info(f"Video: {info['width']}x{info['height']}, {info['fps']:.2f} fps, "
                f"{info['frame_count']} frames ({elapsed:.1f} s)")
    size_mb = output_path.stat().st_size / (1024 * 1024)
    logger.info(f"[bold green]✓ Video processed successfully![/] ({size_mb:.1f} MB)")
    return True


# ==================== Help & Listing ====================

def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]      [bold white]Dither CLI[/] [dim]- v1.0[/]             [bold cyan]║[/]
[bold cyan]║[/]  Palette Dithering Tool               [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_list(palette_file: str = "palette.json"):
    """Print every algorithm, built-in palette and custom palette."""
    console.print("  [bold]Dithering Algorithms:[/]")
    for algo in DitherAlgorithm:
        console.print(f"    • [cyan]{algo.value}[/] [dim]({ALGORITHM_LABELS[algo]})[/]")

    console.print("\n  [bold]Palettes:[/]")
    for mode in PaletteMode:
        if mode == PaletteMode.CUSTOM:
            continue
        count = len(PaletteCatalog.get_palette(mode))
        console.print(f"    • [cyan]{mode.value}[/] [dim]({PALETTE_LABELS[mode]}, {count} colors)[/]")

    names = PaletteManager(palette_file).list_palette_names()
    if names:
        console.print(f"\n  [bold]Custom Palettes[/] [dim]({palette_file}):[/]")
        for name in names:
            console.print(f"    • [cyan]{name}[/]")
    console.print("")


def show_example_config():
    example = {"defaults": dict(ConfigManager.DEFAULT_CONFIG["defaults"])}
    console.print(Panel(json.dumps(example, indent=4), title="config.json", border_style="cyan"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dither-cli",
        description="Dither an image to a fixed color palette",
        epilog="Examples:\n"
               "  dither-cli input.jpg output.png\n"
               "  dither-cli -a atkinson -p gameboy input.jpg output.png\n"
               "  dither-cli -a bayer-8x8 -p pico8 -s 1.5 input.jpg output.png\n"
               "  dither-cli -a atkinson -p cga --no-serpentine clip.mp4 dithered.mp4",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument('input', nargs='?', help='Input image or video')
    parser.add_argument('output', nargs='?', help='Output image or video')

    parser.add_argument('-a', '--algorithm', type=str,
                        help='Dithering algorithm (default: floyd-steinberg): ' + ', '.join(ALGORITHM_NAMES))
    parser.add_argument('-p', '--palette', type=str,
                        help='Color palette (default: monochrome): ' + ', '.join(PALETTE_NAMES))
    parser.add_argument('-s', '--strength', type=float, help='Strength (0.0-2.0, default: 1.0)')
    parser.add_argument('-g', '--gamma', type=float, help='Gamma correction (0.1-3.0, default: 1.0)')
    parser.add_argument('-c', '--contrast', type=float, help='Contrast (0.0-3.0, default: 1.0)')
    parser.add_argument('-b', '--brightness', type=float, help='Brightness (-1.0-1.0, default: 0.0)')
    parser.add_argument('--saturation', type=float, help='Saturation (0.0-2.0, default: 1.0)')
    parser.add_argument('--serpentine', dest='serpentine', action='store_true', default=None,
                        help='Serpentine scanning for error diffusion (default)')
    parser.add_argument('--no-serpentine', dest='serpentine', action='store_false',
                        help='Scan every row left to right')
    parser.add_argument('--seed', type=int, help='Random seed (default: 42)')
    parser.add_argument('--bayer-size', dest='bayer_size', type=int,
                        help='Override the Bayer matrix size (power of two)')

    parser.add_argument('--custom-palette', type=str, help='Use a named palette from the palette file')
    parser.add_argument('--colors', type=str, help='Use a palette given as HEX,HEX,...')
    parser.add_argument('--palette-file', type=str, default='palette.json',
                        help='Custom palette file (default: palette.json)')

    parser.add_argument('--config', type=str, help='JSON config file with default settings')
    parser.add_argument('--save-config', action='store_true',
                        help='Write the settings used back into the config file')
    parser.add_argument('--example-config', action='store_true', help='Print an example config')
    parser.add_argument('--list', action='store_true', help='List algorithms and palettes')

    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    return parser


def remember_run(config: ConfigManager, params: DitherParameters,
                 input_path: Path, output_path: Path):
    """Store the settings and paths of a successful run in the config file."""
    settings = params.as_dict()
    for key in ConfigManager.DEFAULT_CONFIG["defaults"]:
        if key == "palette" and params.palette_mode == PaletteMode.CUSTOM:
            continue
        config.set("defaults", key, value=settings[key])
    config.update_last_path("input", str(input_path))
    config.update_last_path("save", str(output_path))
    config.add_recent_file(str(input_path))
    if config.save():
        logger.info(f"Settings saved to: [cyan]{config.config_file}[/]")


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.example_config:
        show_banner()
        show_example_config()
        return 0

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if args.list:
        show_banner()
        show_list(args.palette_file)
        return 0

    if not args.quiet:
        show_banner()

    if not args.input or not args.output:
        console.print("[bold red]Error:[/] Input and output files are required.\n")
        parser.print_usage()
        return 1

    try:
        if args.config:
            logger.info(f"Loading configuration from: [cyan]{args.config}[/]")
            config = load_config(Path(args.config))
            logger.info("[green]✓[/] Configuration validated")
        else:
            config = None
        defaults = config.get_defaults() if config else {}

        input_path = Path(args.input)
        if not input_path.exists():
            raise ConfigValidationError(f"Input file not found: {input_path}")
        mode = detect_mode(input_path)
        output_path = Path(args.output)
        if mode == "video" and output_path.suffix.lower() not in VIDEO_EXTENSIONS:
            raise ConfigValidationError(f"Video output needs a video extension, got: {output_path.name}")

        params = build_parameters(args, defaults)
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        return 1

    if params.palette_mode == PaletteMode.CUSTOM:
        logger.info("Custom palette: " + " ".join(rgb_to_hex(c) for c in params.custom_palette))

    if mode == "video":
        success = process_single_video(input_path, output_path, params, show_progress=not args.quiet)
    else:
        success = process_single_image(input_path, output_path, params)
    if not success:
        logger.error("[bold red]✗ Processing failed![/]")
        return 1

    if config is not None and args.save_config:
        remember_run(config, params, input_path, output_path)

    logger.info("[bold green]✓ Processing complete![/]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
