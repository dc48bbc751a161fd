"""
Frame-by-frame video dithering through ffmpeg.

ffmpeg extracts the frames as PNG files into a temporary directory, every
frame is dithered on its own with the same parameters, and ffmpeg encodes
the result at the source frame rate, copying the source audio when there
is any. Frames share no state, so a frame's output does not depend on its
neighbours.
"""

import json
import logging
import shutil
import subprocess
import tempfile
from functools import partial
from multiprocessing import Pool, cpu_count
from pathlib import Path
from typing import Callable, Dict, List, Optional

from PIL import Image

from dither_engine import DitherParameters, ImageDitherer
from utils import ensure_rgb

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.png"
DEFAULT_FPS = 30.0


class VideoProcessingError(Exception):
    """Raised when ffmpeg is missing or fails, or the video has no frames."""
    pass


def _run_ffmpeg(cmd: List[str], what: str) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, capture_output=True, text=True, check=True)
    except FileNotFoundError:
        raise VideoProcessingError(f"{cmd[0]} not found on PATH")
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or "").strip().splitlines()
        raise VideoProcessingError(f"{what} failed: {detail[-1] if detail else e}")


def _parse_frame_rate(text: str) -> float:
    """Frame rates come as "30000/1001" or "25"."""
    try:
        if "/" in text:
            num, den = text.split("/", 1)
            return float(num) / float(den) if float(den) else DEFAULT_FPS
        return float(text) if text else DEFAULT_FPS
    except ValueError:
        return DEFAULT_FPS


def _dither_frame(frame_path: Path, params: DitherParameters) -> Path:
    """Dither one extracted frame in place. Top level so a Pool can pickle it."""
    with Image.open(frame_path) as img:
        image = ensure_rgb(img)
        image.load()
    ImageDitherer(params).apply_dithering(image).save(frame_path)
    return frame_path


class VideoProcessor:
    """
    Dithers every frame of a video with one set of parameters.

    ``progress_callback`` is called with (fraction, message), fraction
    growing from 0.0 to 1.0.
    """

    def __init__(self,
                 num_workers: Optional[int] = None,
                 progress_callback: Optional[Callable[[float, str], None]] = None):
        # At most 4 workers, leaving one core free
        if num_workers is None:
            num_workers = min(4, max(1, cpu_count() - 1))
        self.num_workers = max(1, num_workers)
        self.progress_callback = progress_callback

    def _report_progress(self, fraction: float, message: str):
        if self.progress_callback:
            self.progress_callback(fraction, message)

    @staticmethod
    def ffmpeg_available() -> bool:
        return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None

    def get_video_info(self, video_path: str) -> Dict:
        """
        Read the first video stream's metadata from the container.

        Returns:
            dict with keys: fps, width, height, frame_count (None if unknown)
        """
        cmd = [
            "ffprobe", "-v", "error", "-select_streams", "v:0",
            "-show_entries", "stream=width,height,r_frame_rate,nb_frames",
            "-of", "json", video_path,
        ]
        result = _run_ffmpeg(cmd, "Reading stream info")
        try:
            streams = json.loads(result.stdout).get("streams", [])
        except json.JSONDecodeError as e:
            raise VideoProcessingError(f"Unreadable stream info: {e}")
        if not streams:
            raise VideoProcessingError(f"No video stream in {video_path}")

        stream = streams[0]
        nb_frames = stream.get("nb_frames")
        return {
            'fps': _parse_frame_rate(str(stream.get("r_frame_rate", ""))),
            'width': int(stream.get("width", 0)),
            'height': int(stream.get("height", 0)),
            'frame_count': int(nb_frames) if str(nb_frames).isdigit() else None,
        }

    def _dither_frames(self, frame_files: List[Path], params: DitherParameters):
        total = len(frame_files)
        worker = partial(_dither_frame, params=params)

        if self.num_workers == 1:
            frames = map(worker, frame_files)
            self._consume(frames, total)
            return

        with Pool(processes=self.num_workers) as pool:
            self._consume(pool.imap(worker, frame_files), total)

    def _consume(self, frames, total: int):
        for done, _ in enumerate(frames, start=1):
            self._report_progress(0.1 + 0.8 * done / total, f"Dithered {done}/{total} frames")

    def process_video(self, input_path: str, output_path: str, params: DitherParameters) -> Dict:
        """
        Dither ``input_path`` frame by frame and write ``output_path``.

        Returns:
            the source video info, with frame_count set to the frames written

        Raises:
            VideoProcessingError: ffmpeg missing or failing, or no frames decoded
        """
        if not self.ffmpeg_available():
            raise VideoProcessingError("ffmpeg and ffprobe must be installed and on PATH")
        self._report_progress(0.0, "Reading video info...")
        info = self.get_video_info(input_path)
        fps = info['fps']
        logger.debug(f"Video info: {info}")

        with tempfile.TemporaryDirectory() as tmp_dir:
            frame_pattern = str(Path(tmp_dir) / FRAME_PATTERN)

            self._report_progress(0.05, "Extracting frames...")
            _run_ffmpeg(["ffmpeg", "-v", "error", "-i", input_path, frame_pattern],
                        "Frame extraction")

            frame_files = sorted(Path(tmp_dir).glob("frame_*.png"))
            if not frame_files:
                raise VideoProcessingError(f"No frames extracted from {input_path}")

            self._report_progress(0.1, f"Dithering {len(frame_files)} frames...")
            self._dither_frames(frame_files, params)

            self._report_progress(0.9, "Encoding video...")
            encode_cmd = [
                "ffmpeg", "-y", "-v", "error",
                "-framerate", f"{fps:.5f}",
                "-i", frame_pattern,
                "-i", input_path,
                "-map", "0:v:0",
                "-map", "1:a?",
                # yuv420p needs even dimensions
                "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
                "-pix_fmt", "yuv420p",
                "-frames:v", str(len(frame_files)),
                "-c:a", "copy",
                output_path,
            ]
            _run_ffmpeg(encode_cmd, "Encoding")

        self._report_progress(1.0, "Video processing complete!")
        return dict(info, frame_count=len(frame_files))
