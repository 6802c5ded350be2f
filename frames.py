"""
Frame and image output.

Progress frames can go to a PNG stream (typically stdout, piped into
`ffmpeg -f image2pipe`) or straight into an H.264 file through an FFmpeg
subprocess pipe. The final image is saved atomically.
"""

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple, Union

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)


def save_image(image: Image.Image, path: Union[str, Path]) -> str:
    """
    Save an image as PNG without ever leaving a partial file behind.

    The image is written to a temporary file in the target directory and
    renamed into place once complete.

    Returns:
        Path of the written file
    """
    path = Path(path)
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(dir=directory, prefix=f".{path.name}.", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            image.save(f, format="PNG")
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        raise

    logger.info(f"Saved {path}")
    return str(path)


class PngFrameStream:
    """
    Writes each frame as a complete PNG to a binary stream.

    Args:
        stream: Binary file-like object, e.g. sys.stdout.buffer
    """

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.frame_count = 0

    def write(self, frame: Image.Image) -> None:
        """Encode and write one frame."""
        frame.save(self.stream, format="PNG")
        self.stream.flush()
        self.frame_count += 1

    def __enter__(self) -> 'PngFrameStream':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logger.debug(f"Wrote {self.frame_count} PNG frames to stream")
        return False


class FFmpegWriter:
    """
    Context manager for writing frames to an H.264 video via FFmpeg pipe.

    Accepts PIL images (any mode, flattened onto black) or RGB numpy arrays.

    Args:
        path: Output file path
        fps: Frame rate
        size: Video dimensions (width, height); both must be even for yuv420p
    """

    def __init__(self, path: str, fps: float, size: Tuple[int, int]):
        self.path = path
        self.fps = fps
        self.width, self.height = size
        self.process: Optional[subprocess.Popen] = None
        self._frame_count = 0

    def _build_command(self) -> List[str]:
        return [
            "ffmpeg", "-y", "-v", "error",
            "-f", "rawvideo",
            "-pix_fmt", "rgb24",
            "-s", f"{self.width}x{self.height}",
            "-r", str(self.fps),
            "-i", "-",
            "-c:v", "libx264",
            "-preset", "fast",
            "-crf", "23",
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
            self.path,
        ]

    def __enter__(self) -> 'FFmpegWriter':
        try:
            self.process = subprocess.Popen(
                self._build_command(),
                stdin=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=self.width * self.height * 3 * 2,
            )
        except FileNotFoundError as e:
            raise RuntimeError("ffmpeg not found; install FFmpeg to write video output") from e
        logger.debug(f"Opened FFmpegWriter: {self.path}")
        return self

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def write(self, frame: Union[Image.Image, np.ndarray]) -> None:
        """Write a frame (PIL image or RGB numpy array)."""
        if self.process is None or self.process.stdin is None:
            raise RuntimeError("Writer not initialized")

        if isinstance(frame, Image.Image):
            frame = _flatten(frame)

        if frame.shape[:2] != (self.height, self.width):
            raise ValueError(
                f"Frame size mismatch: expected {self.width}x{self.height}, "
                f"got {frame.shape[1]}x{frame.shape[0]}"
            )

        self.process.stdin.write(np.ascontiguousarray(frame, dtype=np.uint8).tobytes())
        self._frame_count += 1

    def _abort(self) -> None:
        """Kill ffmpeg and remove the unfinished video."""
        self.process.kill()
        self.process.wait()
        if self.process.stdin:
            try:
                self.process.stdin.close()
            except OSError:
                # Buffered frames cannot reach a dead process
                pass
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        logger.debug(f"Aborted FFmpegWriter: {self.path} ({self._frame_count} frames)")

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.process and exc_type is not None:
            self._abort()
        elif self.process:
            try:
                if self.process.stdin:
                    self.process.stdin.close()
                self.process.wait(timeout=30)
                if self.process.returncode != 0:
                    stderr = self.process.stderr.read() if self.process.stderr else b''
                    logger.error(f"FFmpeg writer failed: {stderr.decode(errors='replace')}")
            except subprocess.TimeoutExpired:
                logger.warning("FFmpeg writer timeout, killing process")
                self.process.kill()
            logger.debug(f"Released FFmpegWriter: {self.path} ({self._frame_count} frames)")
        return False


def _flatten(image: Image.Image) -> np.ndarray:
    """Composite an image onto opaque black and return an RGB array."""
    rgba = image.convert("RGBA")
    background = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
    background.alpha_composite(rgba)
    return np.asarray(background.convert("RGB"))
