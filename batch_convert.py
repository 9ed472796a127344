#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
#

"""
Batch scheduling of conversion jobs.

Jobs run on a bounded thread pool. The calling thread collects completions
with as_completed and is the only writer of the BatchResult, so counters and
warnings need no locking.
"""

from __future__ import annotations

import logging
import math
import os
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Final, Protocol, TypeAlias

from media_encoders import ImageEncoder, PillowWebpEncoder, VideoEncoder
from size_search import ConversionJob, MediaKind, Outcome, OutcomeStatus, run_job

__all__: Final[list[str]] = [
    "BatchConfig",
    "BatchResult",
    "ConfigurationError",
    "ReportSink",
    "default_worker_count",
    "derive_output_path",
    "plan_jobs",
    "run_batch",
]

logger = logging.getLogger(__name__)

# Share of CPUs given to encoders; the rest stays free for the host
WORKER_CPU_SHARE: Final[float] = 0.75

JobRunner: TypeAlias = Callable[[ConversionJob], Outcome]


class ConfigurationError(Exception):
    """Raised when batch configuration is invalid."""


def default_worker_count() -> int:
    """max(1, floor(cpus * 0.75))."""
    return max(1, math.floor((os.cpu_count() or 1) * WORKER_CPU_SHARE))


# ═══════════════════════════════════════════════════════════════════
#                        DATA MODELS
# ═══════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True, kw_only=True)
class BatchConfig:
    """Global settings applied to every job of a run."""

    target_size_kb: int
    quality: int
    output_dir: Path
    input_root: Path | None = None  # mirrored layout when set, flattened otherwise
    workers: int = field(default_factory=default_worker_count)

    def __post_init__(self) -> None:
        if self.target_size_kb <= 0:
            raise ConfigurationError(f"Target size must be > 0 KB, got {self.target_size_kb}")
        if not 0 <= self.quality <= 100:
            raise ConfigurationError(f"Quality must be between 0 and 100, got {self.quality}")
        if self.workers < 1:
            raise ConfigurationError(f"Workers must be >= 1, got {self.workers}")
        if self.output_dir.exists() and not self.output_dir.is_dir():
            raise ConfigurationError(f"Output path is not a directory: {self.output_dir}")
        if not self.output_dir.is_absolute():
            object.__setattr__(self, "output_dir", self.output_dir.resolve())


@dataclass(slots=True, kw_only=True)
class BatchResult:
    """Aggregate of one batch run. Written only by the coordinating thread."""

    converted: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: float = field(default_factory=time.time)
    warnings: list[str] = field(default_factory=list)
    failures: list[tuple[Path, str]] = field(default_factory=list)
    _started: float = field(default_factory=time.perf_counter, repr=False)
    _finished: float | None = field(default=None, repr=False)

    @property
    def total(self) -> int:
        return self.converted + self.failed + self.skipped

    @property
    def finished(self) -> bool:
        return self._finished is not None

    @property
    def elapsed(self) -> float:
        """Seconds from start to finish (or to now while running)."""
        end = self._finished if self._finished is not None else time.perf_counter()
        return end - self._started

    def record(self, outcome: Outcome) -> None:
        if self.finished:
            raise RuntimeError("BatchResult is read-only once the batch has finished")

        if outcome.status is OutcomeStatus.CONVERTED:
            self.converted += 1
            if outcome.warning:
                self.warnings.append(outcome.warning)
        elif outcome.status is OutcomeStatus.FAILED:
            self.failed += 1
            self.failures.append((outcome.job.source, outcome.error or "unknown error"))
        else:
            self.skipped += 1

    def finish(self) -> None:
        self._finished = time.perf_counter()


class ReportSink(Protocol):
    """Receives progress while a batch runs, then the finished result."""

    def job_finished(self, outcome: Outcome) -> None: ...

    def batch_finished(self, result: BatchResult) -> None: ...


# ═══════════════════════════════════════════════════════════════════
#                        JOB PLANNING
# ═══════════════════════════════════════════════════════════════════


def derive_output_path(
    source: Path,
    kind: MediaKind,
    output_dir: Path,
    input_root: Path | None,
) -> Path:
    """Output location before collision handling.

    With an input root the relative directory structure is mirrored;
    otherwise the file is placed directly in output_dir.
    """
    if input_root is not None and source.is_relative_to(input_root):
        relative = source.relative_to(input_root)
    else:
        relative = Path(source.name)
    return output_dir / relative.with_suffix(kind.output_extension)


def _disambiguate(path: Path, taken: set[str]) -> Path:
    """Append -1, -2, ... to the stem until the path is unused."""
    candidate = path
    counter = 1
    while str(candidate).casefold() in taken:
        candidate = path.with_name(f"{path.stem}-{counter}{path.suffix}")
        counter += 1
    taken.add(str(candidate).casefold())
    return candidate


def plan_jobs(
    images: Iterable[Path],
    videos: Iterable[Path],
    config: BatchConfig,
) -> list[ConversionJob]:
    """Turn discovered files into jobs with unique output paths.

    Sources are assigned in sorted order so reruns map every source to the
    same output.
    """
    taken: set[str] = set()
    jobs: list[ConversionJob] = []
    sources = [(p, MediaKind.IMAGE) for p in images] + [(p, MediaKind.VIDEO) for p in videos]

    for source, kind in sorted(sources, key=lambda item: (item[1], str(item[0]))):
        output = derive_output_path(source, kind, config.output_dir, config.input_root)
        unique = _disambiguate(output, taken)
        if unique != output:
            logger.info("Output name collision for %s, writing %s", source, unique.name)
        jobs.append(
            ConversionJob(
                source=source,
                output=unique,
                target_size_kb=config.target_size_kb,
                quality=config.quality,
                kind=kind,
            )
        )
    return jobs


# ═══════════════════════════════════════════════════════════════════
#                        EXECUTION
# ═══════════════════════════════════════════════════════════════════


def run_batch(
    jobs: Sequence[ConversionJob],
    *,
    workers: int,
    sink: ReportSink | None = None,
    runner: JobRunner | None = None,
    image_encoder: ImageEncoder | None = None,
    video_encoder: VideoEncoder | None = None,
) -> BatchResult:
    """Run every job on a pool of at most `workers` threads.

    A job that raises is logged and counted as failed; it never stops the
    batch. Warnings reach the sink once, with the finished result.
    """
    if workers < 1:
        raise ConfigurationError(f"Workers must be >= 1, got {workers}")

    if runner is None:
        runner = partial(
            run_job,
            image_encoder=image_encoder or PillowWebpEncoder(),
            video_encoder=video_encoder,
        )

    result = BatchResult()
    logger.info("Converting %d file(s) with %d worker(s)", len(jobs), workers)

    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_job: dict[Future[Outcome], ConversionJob] = {
            executor.submit(runner, job): job for job in jobs
        }

        for future in as_completed(future_to_job):
            job = future_to_job[future]
            try:
                outcome = future.result()
            except Exception as e:
                logger.exception("Unexpected error converting %s", job.source)
                outcome = Outcome.failed(job, f"Unexpected error: {e}")

            result.record(outcome)
            if sink is not None:
                sink.job_finished(outcome)

    result.finish()
    logger.info(
        "Batch finished: %d converted, %d failed, %d skipped in %.2fs",
        result.converted,
        result.failed,
        result.skipped,
        result.elapsed,
    )
    if sink is not None:
        sink.batch_finished(result)
    return result
