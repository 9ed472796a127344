#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
#

"""
Encoder backends.

Two narrow capabilities sit behind the conversion loop:

    ImageEncoder  - encode one still image to WebP at a quality and optional
                    geometry, returning the output size in bytes.
    VideoEncoder  - probe a video's duration and encode it once to WebM at a
                    given bitrate/CRF, returning the output size in bytes.

Images go through Pillow; video goes through ffprobe/ffmpeg subprocesses.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Protocol, TypeAlias

from PIL import Image, ImageOps, UnidentifiedImageError

__all__: Final[list[str]] = [
    "EncodeError",
    "EncoderError",
    "FfmpegWebmEncoder",
    "Geometry",
    "ImageEncoder",
    "PillowWebpEncoder",
    "ProbeError",
    "VideoEncoder",
    "ffmpeg_available",
]

Geometry: TypeAlias = tuple[int, int]

logger = logging.getLogger(__name__)

# WebP compression effort: 0 (fast) - 6 (smallest, slowest)
WEBP_METHOD: Final[int] = 6

# Lines of ffmpeg stderr kept in error messages
STDERR_TAIL_LINES: Final[int] = 5


# ═══════════════════════════════════════════════════════════════════
#                        EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════


class EncoderError(Exception):
    """Base exception for backend failures."""


class ProbeError(EncoderError):
    """Raised when ffprobe cannot analyze a video."""


class EncodeError(EncoderError):
    """Raised when an encode fails (unreadable source, codec or write error)."""


# ═══════════════════════════════════════════════════════════════════
#                        INTERFACES
# ═══════════════════════════════════════════════════════════════════


class ImageEncoder(Protocol):
    def source_geometry(self, source: Path) -> Geometry: ...

    def encode(
        self,
        source: Path,
        dest: Path,
        quality: int,
        geometry: Geometry | None = None,
    ) -> int: ...


class VideoEncoder(Protocol):
    def probe_duration(self, source: Path) -> float | None: ...

    def encode(
        self,
        source: Path,
        dest: Path,
        *,
        bitrate_kbps: int,
        crf: int,
        audio_bitrate_kbps: int,
    ) -> int: ...


def ffmpeg_available() -> bool:
    """Check that both ffmpeg and ffprobe are on PATH."""
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def _stderr_tail(stderr: str | None) -> str:
    if not stderr:
        return "no output"
    lines = [line for line in stderr.strip().splitlines() if line.strip()]
    return "\n".join(lines[-STDERR_TAIL_LINES:]) or "no output"


# ═══════════════════════════════════════════════════════════════════
#                        IMAGE BACKEND (Pillow)
# ═══════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True, kw_only=True)
class PillowWebpEncoder:
    """Still-image encoder producing lossy WebP through Pillow.

    The decoded source is kept per worker thread, so the repeated attempts of
    one search decode it only once. A changed file on disk is decoded again.
    """

    method: int = WEBP_METHOD
    _decoded: threading.local = field(
        default_factory=threading.local, init=False, repr=False, compare=False
    )

    def _load(self, source: Path) -> Image.Image:
        try:
            stat = source.stat()
        except OSError as e:
            raise EncodeError(f"Cannot read image {source.name}: {e}") from e
        key = (source, stat.st_mtime_ns, stat.st_size)

        cached = getattr(self._decoded, "entry", None)
        if cached is not None and cached[0] == key:
            return cached[1]

        # Drop the previous source before decoding the next one
        self._decoded.entry = None
        image = self._decode(source)
        self._decoded.entry = (key, image)
        return image

    def _decode(self, source: Path) -> Image.Image:
        try:
            with Image.open(source) as img:
                img.load()
                upright = ImageOps.exif_transpose(img)
        except (OSError, UnidentifiedImageError, Image.DecompressionBombError, ValueError) as e:
            raise EncodeError(f"Cannot read image {source.name}: {e}") from e

        if upright.mode in ("RGB", "RGBA", "L"):
            return upright
        has_alpha = upright.mode in ("LA", "PA") or "transparency" in upright.info
        return upright.convert("RGBA" if has_alpha else "RGB")

    def source_geometry(self, source: Path) -> Geometry:
        """Upright (EXIF-rotated) width and height of the source.

        Raises:
            EncodeError: If the image cannot be read.
        """
        img = self._load(source)
        return img.width, img.height

    def encode(
        self,
        source: Path,
        dest: Path,
        quality: int,
        geometry: Geometry | None = None,
    ) -> int:
        """Encode source to WebP at dest, overwriting it.

        Returns:
            Output size in bytes.

        Raises:
            EncodeError: If decoding, resizing or writing fails.
        """
        img = self._load(source)
        if geometry is not None and geometry != img.size:
            img = img.resize(geometry, Image.Resampling.LANCZOS)

        try:
            img.save(dest, format="WEBP", quality=quality, method=self.method)
            return dest.stat().st_size
        except (OSError, ValueError) as e:
            # Clean up partial file
            dest.unlink(missing_ok=True)
            raise EncodeError(f"WebP encoding failed for {source.name}: {e}") from e


# ═══════════════════════════════════════════════════════════════════
#                        VIDEO BACKEND (ffmpeg)
# ═══════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True, kw_only=True)
class FfmpegWebmEncoder:
    """Video transcoder producing VP9/Opus WebM through ffmpeg."""

    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"

    def probe_duration(self, source: Path) -> float | None:
        """Container duration in seconds, or None if ffprobe reports none.

        Raises:
            ProbeError: If ffprobe fails or its output cannot be parsed.
        """
        try:
            result = subprocess.run(
                [
                    self.ffprobe,
                    "-v",
                    "error",
                    "-print_format",
                    "json",
                    "-show_format",
                    str(source),
                ],
                capture_output=True,
                text=True,
                check=True,
            )
            data = json.loads(result.stdout)
        except FileNotFoundError:
            raise ProbeError("ffprobe not found in PATH")
        except subprocess.CalledProcessError as e:
            raise ProbeError(
                f"ffprobe failed for {source.name}: {_stderr_tail(e.stderr)}"
            )
        except json.JSONDecodeError as e:
            raise ProbeError(f"Failed to parse ffprobe output for {source.name}: {e}")

        raw = data.get("format", {}).get("duration")
        try:
            return float(raw) if raw is not None else None
        except (TypeError, ValueError):
            logger.debug("Unparseable duration %r for %s", raw, source)
            return None

    def build_command(
        self,
        source: Path,
        dest: Path,
        *,
        bitrate_kbps: int,
        crf: int,
        audio_bitrate_kbps: int,
    ) -> tuple[str, ...]:
        """Construct the ffmpeg command for a single-pass VP9 encode."""
        return (
            self.ffmpeg,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(source),
            "-c:v",
            "libvpx-vp9",
            "-b:v",
            f"{bitrate_kbps}k",
            "-crf",
            str(crf),
            "-c:a",
            "libopus",
            "-b:a",
            f"{audio_bitrate_kbps}k",
            str(dest),
        )

    def encode(
        self,
        source: Path,
        dest: Path,
        *,
        bitrate_kbps: int,
        crf: int,
        audio_bitrate_kbps: int,
    ) -> int:
        """Encode source to WebM at dest.

        Returns:
            Output size in bytes.

        Raises:
            EncodeError: If ffmpeg is missing, fails, or writes nothing.
        """
        cmd = self.build_command(
            source,
            dest,
            bitrate_kbps=bitrate_kbps,
            crf=crf,
            audio_bitrate_kbps=audio_bitrate_kbps,
        )
        logger.debug("Running %s", " ".join(cmd))

        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True)
        except FileNotFoundError:
            raise EncodeError("ffmpeg not found in PATH")
        except subprocess.CalledProcessError as e:
            # Clean up partial file
            dest.unlink(missing_ok=True)
            raise EncodeError(
                f"Encoding failed for {source.name} (exit code {e.returncode}): "
                f"{_stderr_tail(e.stderr)}"
            )

        try:
            return dest.stat().st_size
        except FileNotFoundError:
            raise EncodeError(f"ffmpeg did not produce output for {source.name}") from None
