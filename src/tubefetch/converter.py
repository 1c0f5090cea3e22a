import logging
import subprocess
from pathlib import Path
from typing import List, Optional

import imageio_ffmpeg

from .exceptions import ConversionError

logger = logging.getLogger(__name__)


def get_ffmpeg_cmd() -> str:
    return imageio_ffmpeg.get_ffmpeg_exe()


def build_mp3_command(input_path: str, output_path: str, bitrate: str = "192k") -> List[str]:
    return [
        get_ffmpeg_cmd(),
        "-y",
        "-i", input_path,
        "-vn",  # drop video stream
        "-acodec", "libmp3lame",
        "-b:a", bitrate,
        "-f", "mp3",
        "-loglevel", "error",
        output_path,
    ]


def convert_to_mp3(input_path: str, bitrate: str = "192k", timeout_s: Optional[int] = None) -> str:
    """
    Transcode a downloaded file to mp3 next to the original.

    The intermediate file is deleted once the mp3 exists, so the caller never
    ends up with both. A failed conversion removes its partial output and
    leaves the intermediate for the caller's temp cleanup.
    """
    source = Path(input_path)
    if source.suffix.lower() == ".mp3":
        return str(source)

    target = source.with_suffix(".mp3")
    cmd = build_mp3_command(str(source), str(target), bitrate)

    try:
        completed = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        target.unlink(missing_ok=True)
        raise ConversionError(f"ffmpeg could not convert {source.name}: {e}") from e

    if completed.returncode != 0 or not target.exists():
        target.unlink(missing_ok=True)
        tail = (completed.stderr or "").strip().splitlines()[-1:] or ["no output"]
        raise ConversionError(
            f"ffmpeg exited with {completed.returncode} converting {source.name}: {tail[0]}"
        )

    try:
        source.unlink()
    except FileNotFoundError:
        pass
    logger.debug("Converted %s -> %s", source.name, target.name)
    return str(target)


def check_ffmpeg() -> bool:
    """Verify ffmpeg is available."""
    try:
        exe = get_ffmpeg_cmd()
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (RuntimeError, subprocess.CalledProcessError, OSError):
        return False
