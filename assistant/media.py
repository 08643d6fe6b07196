"""Opaque file-to-file media transforms used before model calls."""

from __future__ import annotations

import base64
import subprocess
from pathlib import Path

from PIL import Image

DEFAULT_FFMPEG_TIMEOUT_SECONDS = 120
MAX_IMAGE_SIDE = 1024


def convert_audio_to_mp3(
    input_path: Path,
    output_path: Path,
    *,
    ffmpeg: str = "ffmpeg",
    timeout: int = DEFAULT_FFMPEG_TIMEOUT_SECONDS,
) -> Path:
    subprocess.run(
        [ffmpeg, "-y", "-i", str(input_path), str(output_path)],
        capture_output=True,
        timeout=timeout,
        check=True,
    )
    if not output_path.exists():
        raise FileNotFoundError(f"ffmpeg did not produce {output_path}")
    return output_path


def resize_image(
    input_path: Path,
    output_path: Path,
    max_width: int = MAX_IMAGE_SIDE,
    max_height: int = MAX_IMAGE_SIDE,
) -> Path:
    """Fit the image inside max_width x max_height, never enlarging it."""
    with Image.open(input_path) as img:
        img = img.convert("RGB")
        img.thumbnail((max_width, max_height))
        img.save(output_path, format="JPEG", quality=90)
    return output_path


def image_to_data_url(path: Path, mime: str = "image/jpeg") -> str:
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"
