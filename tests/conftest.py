import os
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from media_encoders import EncodeError, Geometry, ProbeError
from size_search import ConversionJob, MediaKind

FULL_GEOMETRY: Geometry = (4000, 3000)


class FakeImageEncoder:
    """Deterministic encoder: size scales with quality and pixel area.

    Sources whose name starts with "bad" fail like a corrupt file.
    """

    def __init__(
        self,
        base_kb: float,
        geometry: Geometry = FULL_GEOMETRY,
        delay: float = 0.0,
    ) -> None:
        self.base_bytes = base_kb * 1024
        self.geometry = geometry
        self.delay = delay
        self.calls: list[tuple[int, Geometry | None]] = []
        self.active = 0
        self.high_water = 0
        self._lock = threading.Lock()

    def source_geometry(self, source: Path) -> Geometry:
        return self.geometry

    def size_for(self, quality: int, geometry: Geometry | None) -> int:
        width, height = geometry or self.geometry
        area = (width * height) / (self.geometry[0] * self.geometry[1])
        return max(1, int(self.base_bytes * max(quality, 1) / 100 * area))

    def encode(
        self,
        source: Path,
        dest: Path,
        quality: int,
        geometry: Geometry | None = None,
    ) -> int:
        with self._lock:
            self.calls.append((quality, geometry))
            self.active += 1
            self.high_water = max(self.high_water, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if source.name.startswith("bad"):
                raise EncodeError(f"Cannot read image {source.name}: corrupt")
            dest.write_bytes(b"RIFF")
            return self.size_for(quality, geometry)
        finally:
            with self._lock:
                self.active -= 1


class FakeVideoEncoder:
    def __init__(
        self,
        duration: float | None = 10.0,
        size_bytes: int = 1024,
        probe_error: str | None = None,
    ) -> None:
        self.duration = duration
        self.size_bytes = size_bytes
        self.probe_error = probe_error
        self.calls: list[dict[str, int]] = []

    def probe_duration(self, source: Path) -> float | None:
        if self.probe_error or source.name.startswith("corrupt"):
            raise ProbeError(self.probe_error or f"ffprobe failed for {source.name}")
        return self.duration

    def encode(
        self,
        source: Path,
        dest: Path,
        *,
        bitrate_kbps: int,
        crf: int,
        audio_bitrate_kbps: int,
    ) -> int:
        self.calls.append(
            {"bitrate_kbps": bitrate_kbps, "crf": crf, "audio_bitrate_kbps": audio_bitrate_kbps}
        )
        dest.write_bytes(b"\x1aE\xdf\xa3")
        return self.size_bytes


@pytest.fixture
def make_job(tmp_path: Path) -> Callable[..., ConversionJob]:
    def factory(
        name: str = "photo.jpg",
        *,
        target_size_kb: int = 100,
        quality: int = 100,
        kind: MediaKind = MediaKind.IMAGE,
    ) -> ConversionJob:
        source = tmp_path / "in" / name
        source.parent.mkdir(parents=True, exist_ok=True)
        if not source.exists():
            source.write_bytes(b"source")
        output = (tmp_path / "out" / name).with_suffix(kind.output_extension)
        output.parent.mkdir(parents=True, exist_ok=True)
        return ConversionJob(
            source=source,
            output=output,
            target_size_kb=target_size_kb,
            quality=quality,
            kind=kind,
        )

    return factory


@pytest.fixture
def temp_cwd(tmp_path: Path):
    previous = Path.cwd()
    os.chdir(tmp_path)
    try:
        yield tmp_path
    finally:
        os.chdir(previous)
