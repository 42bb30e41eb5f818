"""FFmpeg helpers turning raw elementary streams into an MP4 container."""
from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Sequence

from .config import DEFAULT_MUX_TIMEOUT_S
from .protocol import StreamMetadata

logger = logging.getLogger(__name__)


class MuxError(RuntimeError):
    """Raised when FFmpeg fails to produce a container file."""


class FFmpegMuxer:
    """Invoke ``ffmpeg`` to copy raw HEVC/H.264 (+AAC) streams into MP4."""

    def __init__(self, binary: str = "ffmpeg", *, timeout: float = DEFAULT_MUX_TIMEOUT_S) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._binary = binary
        self._timeout = float(timeout)

    @property
    def binary(self) -> str:
        return self._binary

    def available(self) -> bool:
        return shutil.which(self._binary) is not None

    def build_command(
        self,
        video_path: Path,
        audio_path: Path | None,
        output_path: Path,
        metadata: StreamMetadata | None = None,
    ) -> list[str]:
        """Return the argument vector used for a mux run."""

        meta = metadata or StreamMetadata()
        command = [
            self._binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-f",
            meta.video_format,
            "-framerate",
            str(meta.video_fps),
            "-i",
            str(video_path),
        ]
        if audio_path is not None:
            command += ["-f", "aac", "-i", str(audio_path), "-c:v", "copy", "-c:a", "copy"]
        else:
            command += ["-c", "copy"]
        command += ["-movflags", "+faststart", str(output_path)]
        return command

    def mux(
        self,
        video_path: Path,
        audio_path: Path | None,
        output_path: Path,
        metadata: StreamMetadata | None = None,
    ) -> Path:
        """Run FFmpeg synchronously and return ``output_path``."""

        command = self.build_command(video_path, audio_path, output_path, metadata)
        logger.info("Running: %s", " ".join(command))
        self._run(command)
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise MuxError(f"FFmpeg produced no output at {output_path}")
        logger.info("Converted to %s", output_path)
        return output_path

    def _run(self, args: Sequence[str]) -> None:
        try:
            subprocess.run(
                list(args),
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise MuxError(f"{self._binary} command unavailable") from exc
        except subprocess.TimeoutExpired as exc:
            raise MuxError(f"{self._binary} timed out after {self._timeout:g}s") from exc
        except subprocess.CalledProcessError as exc:
            error_output = (exc.stderr or "").strip() or (exc.stdout or "").strip() or str(exc)
            raise MuxError(f"{self._binary} exited with code {exc.returncode}: {error_output}") from exc


__all__ = ["FFmpegMuxer", "MuxError"]
