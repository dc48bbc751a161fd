"""Shared fixtures: a tiny generated video clip for the ffmpeg-backed tests."""

import subprocess

import pytest

from video_processor import VideoProcessor

requires_ffmpeg = pytest.mark.skipif(not VideoProcessor.ffmpeg_available(),
                                     reason="ffmpeg not installed")

CLIP_SIZE = (32, 24)
CLIP_FPS = 5
CLIP_FRAMES = 5


@pytest.fixture
def tiny_clip(tmp_path):
    """One second of ffmpeg's test pattern, 32x24 at 5 fps."""
    if not VideoProcessor.ffmpeg_available():
        pytest.skip("ffmpeg not installed")
    path = tmp_path / "clip.mp4"
    width, height = CLIP_SIZE
    subprocess.run([
        "ffmpeg", "-y", "-v", "error",
        "-f", "lavfi", "-i", f"testsrc=size={width}x{height}:rate={CLIP_FPS}:duration=1",
        "-pix_fmt", "yuv420p", str(path),
    ], check=True, capture_output=True)
    return path
