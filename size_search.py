#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
#

"""
Size-constrained re-encoding.

Images are searched over quality and then geometry until the output fits the
byte budget:

    Phase 1: quality 100 -> 90 -> ... -> 10 at full geometry
    Phase 2: fixed quality, shrinking both sides by ~sqrt(target/size)
    Phase 3: smallest allowed geometry at the quality floor

A budget miss is never a failure: the last attempt is kept and the outcome
carries a warning. Only backend errors fail a job.

Video has no search. The bitrate is derived once from the budget and the
probed duration and a single encode is issued.
"""

from __future__ import annotations

import logging
import math
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum, auto
from pathlib import Path
from typing import Final, Self

from media_encoders import EncoderError, Geometry, ImageEncoder, VideoEncoder

__all__: Final[list[str]] = [
    "ConversionJob",
    "EncodeAttempt",
    "MAX_TOTAL_ATTEMPTS",
    "MediaKind",
    "Outcome",
    "OutcomeStatus",
    "convert_video",
    "run_job",
    "search_image_size",
]

logger = logging.getLogger(__name__)

# Constants - quality search
QUALITY_STEP: Final[int] = 10
MIN_QUALITY: Final[int] = 10
MAX_QUALITY_ATTEMPTS: Final[int] = 10
SIZE_TOLERANCE: Final[float] = 1.05  # within 5% of the budget counts as met

# Constants - geometry search
RESIZE_QUALITY: Final[int] = 60
MAX_RESIZE_ATTEMPTS: Final[int] = 4
SCALE_SAFETY: Final[float] = 0.9
MIN_DIMENSION: Final[int] = 200  # shorter side floor in pixels

MAX_TOTAL_ATTEMPTS: Final[int] = MAX_QUALITY_ATTEMPTS + MAX_RESIZE_ATTEMPTS + 1

# Constants - video
VP9_CRF_SCALE: Final[float] = 0.63  # 0-100 quality onto VP9's 0-63 CRF
AUDIO_BITRATE_KBPS: Final[int] = 128
DEFAULT_DURATION_SECONDS: Final[float] = 60.0
MIN_VIDEO_BITRATE_KBPS: Final[int] = 1  # "-b:v 0" would disable the bitrate cap


# ═══════════════════════════════════════════════════════════════════
#                        DATA MODELS
# ═══════════════════════════════════════════════════════════════════


class MediaKind(StrEnum):
    IMAGE = auto()
    VIDEO = auto()

    @property
    def output_extension(self) -> str:
        return ".webp" if self is MediaKind.IMAGE else ".webm"


class OutcomeStatus(StrEnum):
    CONVERTED = auto()
    FAILED = auto()
    SKIPPED = auto()


@dataclass(frozen=True, slots=True, kw_only=True)
class ConversionJob:
    """One source file and where and how to re-encode it."""

    source: Path
    output: Path
    target_size_kb: int
    quality: int
    kind: MediaKind

    def __post_init__(self) -> None:
        if self.target_size_kb <= 0:
            msg = f"target_size_kb must be > 0, got {self.target_size_kb}"
            raise ValueError(msg)
        if not 0 <= self.quality <= 100:
            msg = f"quality must be within 0-100, got {self.quality}"
            raise ValueError(msg)

    @property
    def target_bytes(self) -> int:
        return self.target_size_kb * 1024


@dataclass(frozen=True, slots=True)
class EncodeAttempt:
    """A single encode made while searching; only the last one stays on disk."""

    quality: int
    geometry: Geometry | None
    size_bytes: int


@dataclass(frozen=True, slots=True, kw_only=True)
class Outcome:
    """Result of one ConversionJob. Exactly one is produced per job."""

    job: ConversionJob
    status: OutcomeStatus
    size_bytes: int | None = None
    warning: str | None = None
    error: str | None = None
    attempts: tuple[EncodeAttempt, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.CONVERTED

    @classmethod
    def converted(
        cls,
        job: ConversionJob,
        attempts: tuple[EncodeAttempt, ...],
        *,
        warning: str | None = None,
    ) -> Self:
        size = attempts[-1].size_bytes if attempts else None
        return cls(
            job=job,
            status=OutcomeStatus.CONVERTED,
            size_bytes=size,
            warning=warning,
            attempts=attempts,
        )

    @classmethod
    def failed(
        cls,
        job: ConversionJob,
        error: str,
        attempts: tuple[EncodeAttempt, ...] = (),
    ) -> Self:
        return cls(job=job, status=OutcomeStatus.FAILED, error=error, attempts=attempts)

    @classmethod
    def skipped(cls, job: ConversionJob, reason: str) -> Self:
        return cls(job=job, status=OutcomeStatus.SKIPPED, error=reason)


# ═══════════════════════════════════════════════════════════════════
#                        GEOMETRY HELPERS
# ═══════════════════════════════════════════════════════════════════


def _min_scale(width: int, height: int) -> float:
    """Smallest scale that keeps the shorter side at MIN_DIMENSION."""
    shorter = min(width, height)
    if shorter <= MIN_DIMENSION:
        return 1.0
    return MIN_DIMENSION / shorter


def _scaled_geometry(width: int, height: int, scale: float) -> Geometry:
    scale = min(1.0, max(scale, _min_scale(width, height)))
    return max(1, round(width * scale)), max(1, round(height * scale))


def _fits(size_bytes: int, target_bytes: int) -> bool:
    return size_bytes <= target_bytes * SIZE_TOLERANCE


# ═══════════════════════════════════════════════════════════════════
#                        IMAGE SEARCH
# ═══════════════════════════════════════════════════════════════════


def search_image_size(
    job: ConversionJob,
    encoder: ImageEncoder,
    *,
    on_attempt: Callable[[EncodeAttempt], None] | None = None,
) -> Outcome:
    """Encode job.source to job.output, lowering quality then geometry until
    the output fits job.target_size_kb.

    Always terminates within MAX_TOTAL_ATTEMPTS encodes. Each attempt
    overwrites the previous output.

    Returns:
        Converted (with a warning on a budget miss) or Failed on a backend error.
    """
    attempts: list[EncodeAttempt] = []
    target = job.target_bytes
    # Never encode above the quality the user asked for
    floor_quality = min(MIN_QUALITY, job.quality)
    resize_quality = min(RESIZE_QUALITY, job.quality)

    def attempt(quality: int, geometry: Geometry | None) -> EncodeAttempt:
        size = encoder.encode(job.source, job.output, quality, geometry)
        result = EncodeAttempt(quality=quality, geometry=geometry, size_bytes=size)
        attempts.append(result)
        logger.debug(
            "%s: attempt %d q=%d geometry=%s -> %d bytes",
            job.source.name,
            len(attempts),
            quality,
            geometry,
            size,
        )
        if on_attempt is not None:
            on_attempt(result)
        return result

    try:
        # Phase 1: quality
        quality = job.quality
        while True:
            last = attempt(quality, None)
            if _fits(last.size_bytes, target):
                return Outcome.converted(job, tuple(attempts))
            if quality <= floor_quality or len(attempts) >= MAX_QUALITY_ATTEMPTS:
                break
            quality = max(floor_quality, quality - QUALITY_STEP)

        # Phase 2: geometry
        width, height = encoder.source_geometry(job.source)
        floor_geometry = _scaled_geometry(width, height, 0.0)
        scale = 1.0
        geometry: Geometry = (width, height)
        for _ in range(MAX_RESIZE_ATTEMPTS):
            if geometry == floor_geometry:
                break
            proposed = scale * math.sqrt(target / max(last.size_bytes, 1)) * SCALE_SAFETY
            scale = min(proposed, scale * SCALE_SAFETY)
            geometry = _scaled_geometry(width, height, scale)
            last = attempt(resize_quality, geometry)
            if _fits(last.size_bytes, target):
                return Outcome.converted(job, tuple(attempts))

        # Phase 3: last resort
        if (last.quality, last.geometry or (width, height)) != (floor_quality, floor_geometry):
            last = attempt(floor_quality, floor_geometry)
            if _fits(last.size_bytes, target):
                return Outcome.converted(job, tuple(attempts))
    except EncoderError as e:
        return Outcome.failed(job, str(e), tuple(attempts))

    warning = (
        f"Cannot achieve target size for {job.source.name}: "
        f"{last.size_bytes / 1024:.1f} KB > {job.target_size_kb} KB "
        f"after {len(attempts)} attempts, kept smallest allowed output"
    )
    logger.info(warning)
    return Outcome.converted(job, tuple(attempts), warning=warning)


# ═══════════════════════════════════════════════════════════════════
#                        VIDEO
# ═══════════════════════════════════════════════════════════════════


def video_bitrate_kbps(target_size_kb: int, duration_seconds: float | None) -> int:
    """Video bitrate that spends target_size_kb over the clip's duration."""
    duration = duration_seconds if duration_seconds and duration_seconds > 0 else DEFAULT_DURATION_SECONDS
    return max(MIN_VIDEO_BITRATE_KBPS, math.floor(target_size_kb * 8 / duration))


def vp9_crf(quality: int) -> int:
    return math.floor((100 - quality) * VP9_CRF_SCALE)


def convert_video(job: ConversionJob, encoder: VideoEncoder) -> Outcome:
    """Single-pass bitrate-targeted encode. The output size is not re-checked."""
    try:
        duration = encoder.probe_duration(job.source)
        if not duration or duration <= 0:
            logger.info(
                "%s: duration unknown, assuming %.0fs",
                job.source.name,
                DEFAULT_DURATION_SECONDS,
            )
        bitrate = video_bitrate_kbps(job.target_size_kb, duration)
        crf = vp9_crf(job.quality)
        size = encoder.encode(
            job.source,
            job.output,
            bitrate_kbps=bitrate,
            crf=crf,
            audio_bitrate_kbps=AUDIO_BITRATE_KBPS,
        )
    except EncoderError as e:
        return Outcome.failed(job, str(e))

    return Outcome.converted(job, (EncodeAttempt(quality=crf, geometry=None, size_bytes=size),))


# ═══════════════════════════════════════════════════════════════════
#                        JOB ENTRY POINT
# ═══════════════════════════════════════════════════════════════════


def run_job(
    job: ConversionJob,
    *,
    image_encoder: ImageEncoder,
    video_encoder: VideoEncoder | None,
) -> Outcome:
    """Run one job to its single Outcome.

    Backend errors become Failed; anything unexpected propagates to the caller.
    """
    if not job.source.is_file():
        return Outcome.skipped(job, "Source no longer exists")

    try:
        job.output.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return Outcome.failed(job, f"Cannot create output directory: {e}")

    if job.kind is MediaKind.IMAGE:
        outcome = search_image_size(job, image_encoder)
    elif video_encoder is None:
        return Outcome.failed(job, "No video encoder available (ffmpeg not found)")
    else:
        outcome = convert_video(job, video_encoder)

    if outcome.ok:
        # Copy filesystem timestamps (mtime, atime) from source
        shutil.copystat(job.source, job.output)
    return outcome
