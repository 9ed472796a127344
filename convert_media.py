#!/usr/bin/env -S uv run --quiet --script
# /// script
# requires-python = ">=3.13"
# dependencies = [
#     "rich>=14.0",
#     "pillow>=11.0",
# ]
# ///
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
#

"""
Size-Constrained Media Converter

Re-encodes images to WebP and videos to WebM so that every output stays
under a target file size.

Images: quality is lowered step by step, then the image is downscaled, until
        the WebP fits the budget. If nothing fits, the smallest allowed
        output is kept and a warning is shown.
Video:  the VP9 bitrate is computed from the budget and the clip duration
        and a single encode is made.

Prerequisites:
    - ffmpeg and ffprobe on PATH for video (images work without them)

Usage:
    ./convert_media.py
    Or: uv run convert_media.py
    Then answer the prompts (media type, input, size, quality, output).
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import ClassVar, Final

if sys.version_info >= (3, 12):
    from typing import override
else:
    from typing_extensions import override

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.table import Table

from batch_convert import (
    BatchConfig,
    BatchResult,
    ConfigurationError,
    default_worker_count,
    plan_jobs,
    run_batch,
)
from media_encoders import FfmpegWebmEncoder, PillowWebpEncoder, ffmpeg_available
from media_paths import (
    IMAGE_EXTENSIONS,
    VIDEO_EXTENSIONS,
    DiscoveryError,
    PathSelection,
    PathValidationError,
    collect_media,
    validate_multiple_paths,
)
from size_search import Outcome

__version__: Final[str] = "1.0.0"

DEFAULT_TARGET_SIZE_KB: Final[int] = 100
DEFAULT_QUALITY: Final[int] = 100
DEFAULT_OUTPUT_DIR: Final[str] = "./converted-media"

# Rich console for output
console = Console()

logger = logging.getLogger("convert_media")


# ═══════════════════════════════════════════════════════════════════
#                        LOGGING
# ═══════════════════════════════════════════════════════════════════


class _AnsiColor(StrEnum):
    """ANSI color codes for terminal output."""

    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    RED = "\033[0;31m"
    GRAY = "\033[0;37m"
    RESET = "\033[0m"


class _ColoredFormatter(logging.Formatter):
    """Logging formatter with colored output."""

    _LEVEL_COLORS: ClassVar[dict[int, str]] = {
        logging.DEBUG: _AnsiColor.GRAY,
        logging.INFO: _AnsiColor.GREEN,
        logging.WARNING: _AnsiColor.YELLOW,
        logging.ERROR: _AnsiColor.RED,
    }

    @override
    def format(self, record: logging.LogRecord) -> str:
        color = self._LEVEL_COLORS.get(record.levelno, _AnsiColor.RESET)
        message = f"{color}[{record.levelname}]{_AnsiColor.RESET} {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def _configure_logging(verbose: bool) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_ColoredFormatter())
        root.addHandler(handler)


# ═══════════════════════════════════════════════════════════════════
#                        PROMPTS
# ═══════════════════════════════════════════════════════════════════


class ConversionCancelled(Exception):
    """Raised when the user leaves a prompt empty or declines to start."""


@dataclass(frozen=True, slots=True, kw_only=True)
class ConversionOptions:
    """Everything gathered from the prompts."""

    media_type: str  # "images", "videos" or "both"
    selection: PathSelection
    target_size_kb: int
    quality: int
    output_dir: Path

    @property
    def wants_images(self) -> bool:
        return self.media_type != "videos"

    @property
    def wants_videos(self) -> bool:
        return self.media_type != "images"


def prompt_media_type(video_support: bool) -> str:
    choices = ["images", "videos", "both"] if video_support else ["images"]
    return Prompt.ask(
        "What would you like to convert?",
        choices=choices,
        default="images",
        console=console,
    )


def prompt_input_paths() -> PathSelection:
    while True:
        raw = Prompt.ask(
            "Please enter the path to your folder or file "
            "[dim](you can also drag and drop files into the terminal)[/]",
            console=console,
        )
        if not raw or not raw.strip():
            raise ConversionCancelled

        try:
            selection = validate_multiple_paths(raw)
        except PathValidationError as e:
            console.print(f"[red]{e}[/]")
            continue

        if selection.all_exist:
            return selection
        for invalid in selection.invalid_paths:
            console.print(f"[red]Path does not exist:[/] {invalid}")


def prompt_target_size() -> int:
    while True:
        value = IntPrompt.ask(
            "What is the maximum file size for the output? (in KB)",
            default=DEFAULT_TARGET_SIZE_KB,
            console=console,
        )
        if value > 0:
            return value
        console.print("[red]Size must be greater than 0[/]")


def prompt_quality() -> int:
    while True:
        value = IntPrompt.ask(
            "Which quality do you want to use? (0-100)",
            default=DEFAULT_QUALITY,
            console=console,
        )
        if 0 <= value <= 100:
            return value
        console.print("[red]Quality must be between 0 and 100[/]")


def prompt_output_dir() -> Path:
    raw = Prompt.ask(
        "Where should the converted files be saved?",
        default=DEFAULT_OUTPUT_DIR,
        console=console,
    )
    if not raw or not raw.strip():
        raise ConversionCancelled
    return Path(raw.strip()).resolve()


def gather_options(video_support: bool) -> ConversionOptions:
    """Run the prompts in order.

    Raises:
        ConversionCancelled: On an empty answer.
    """
    media_type = prompt_media_type(video_support)
    selection = prompt_input_paths()
    target_size_kb = prompt_target_size()
    quality = prompt_quality()
    output_dir = prompt_output_dir()
    return ConversionOptions(
        media_type=media_type,
        selection=selection,
        target_size_kb=target_size_kb,
        quality=quality,
        output_dir=output_dir,
    )


def confirm_options(options: ConversionOptions) -> None:
    """Show the summary table and ask before starting.

    Raises:
        ConversionCancelled: If the user declines.
    """
    table = Table(title="Conversion Summary", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="bold")

    paths = options.selection.valid_paths
    if options.selection.is_multiple:
        input_label = f"{len(paths)} selected path(s)"
    else:
        kind = "folder" if paths[0].is_dir() else "file"
        input_label = f"{paths[0]} ({kind})"

    table.add_row("Media Type", options.media_type)
    table.add_row("Input", input_label)
    table.add_row("Max Size", f"{options.target_size_kb} KB")
    table.add_row("Quality", str(options.quality))
    table.add_row("Output", str(options.output_dir))
    console.print(table)

    if not Confirm.ask("Start conversion?", default=True, console=console):
        raise ConversionCancelled


# ═══════════════════════════════════════════════════════════════════
#                        REPORTING
# ═══════════════════════════════════════════════════════════════════


class RichReporter:
    """Progress bar while the batch runs; warnings only once it is done."""

    def __init__(self, total: int) -> None:
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        )
        self._task = self._progress.add_task("Converting...", total=total)
        self._running = False

    def __enter__(self) -> RichReporter:
        self._progress.start()
        self._running = True
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stop()

    def _stop(self) -> None:
        if self._running:
            self._progress.stop()
            self._running = False

    def job_finished(self, outcome: Outcome) -> None:
        self._progress.advance(self._task)

    def batch_finished(self, result: BatchResult) -> None:
        self._stop()

        if result.warnings:
            console.print(f"\n[yellow]{len(result.warnings)} warning(s):[/]")
            for warning in result.warnings:
                console.print(f"  [yellow]⚠[/] {warning}")

        if result.failures:
            console.print(f"\n[red]{len(result.failures)} file(s) failed:[/]")
            for source, reason in result.failures:
                console.print(f"  [red]✗[/] {source.name}: {reason}")


def print_results(result: BatchResult, output_dir: Path) -> None:
    console.print("\n[bold green]✓ Done![/]")
    console.print(f"Successfully converted: [bold green]{result.converted}[/] files")
    if result.failed:
        console.print(f"Failed: [bold red]{result.failed}[/]")
    if result.skipped:
        console.print(f"Skipped: [bold yellow]{result.skipped}[/]")
    console.print(f"Time elapsed: [bold]{result.elapsed:.2f}s[/]")
    console.print(f"\nYour files are ready in: [bold blue]{output_dir}[/]")


# ═══════════════════════════════════════════════════════════════════
#                        CONVERSION
# ═══════════════════════════════════════════════════════════════════


def convert_media(
    options: ConversionOptions,
    *,
    workers: int,
    video_support: bool,
) -> BatchResult:
    """Discover files, plan jobs and run the batch.

    Raises:
        ConfigurationError: If the options are invalid.
        DiscoveryError: If an input directory cannot be read.
    """
    config = BatchConfig(
        target_size_kb=options.target_size_kb,
        quality=options.quality,
        output_dir=options.output_dir,
        input_root=options.selection.root,
        workers=workers,
    )

    paths = options.selection.valid_paths
    images = (
        collect_media(paths, IMAGE_EXTENSIONS, config.output_dir)
        if options.wants_images
        else ()
    )
    videos = (
        collect_media(paths, VIDEO_EXTENSIONS, config.output_dir)
        if options.wants_videos
        else ()
    )

    jobs = plan_jobs(images, videos, config)
    if not jobs:
        console.print("\n[yellow]No media files found to convert.[/]")
        result = BatchResult()
        result.finish()
        return result

    console.print(
        f"\n[bold blue]Converting {len(images)} image(s) and {len(videos)} video(s)[/]"
    )
    console.print(f"  Workers: {config.workers}\n")

    with RichReporter(total=len(jobs)) as reporter:
        return run_batch(
            jobs,
            workers=config.workers,
            sink=reporter,
            image_encoder=PillowWebpEncoder(),
            video_encoder=FfmpegWebmEncoder() if video_support else None,
        )


# ═══════════════════════════════════════════════════════════════════
#                        MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    default_workers = default_worker_count()

    parser = argparse.ArgumentParser(
        description="Convert images to WebP and videos to WebM under a target file size.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
All conversion settings are asked interactively.

Examples:
  %(prog)s              # Answer the prompts
  %(prog)s -j 2         # Limit to 2 parallel conversions
  %(prog)s -v           # Show every encode attempt
""",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=default_workers,
        metavar="N",
        help=f"Parallel conversions (default: {default_workers})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    args = parser.parse_args(argv)
    if args.jobs < 1:
        parser.error(f"--jobs must be >= 1, got {args.jobs}")
    return args


def main(argv: list[str] | None = None) -> None:
    """Script entry point."""
    args = parse_arguments(argv)
    _configure_logging(args.verbose)

    console.print("\n[bold blue]👋 Welcome to the Media Converter![/]\n")

    video_support = ffmpeg_available()
    if not video_support:
        console.print("[yellow]⚠ FFmpeg not found. Video conversion will not be available.[/]")
        console.print("[dim]Install FFmpeg to enable video conversion: https://ffmpeg.org/download.html[/]\n")

    try:
        options = gather_options(video_support)
        confirm_options(options)
    except (ConversionCancelled, KeyboardInterrupt, EOFError):
        console.print("\n[red]Operation cancelled.[/]")
        sys.exit(0)

    try:
        result = convert_media(options, workers=args.jobs, video_support=video_support)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/]")
        sys.exit(130)
    except (ConfigurationError, DiscoveryError) as e:
        console.print(f"\n[red]Configuration error:[/] {e}")
        sys.exit(1)
    except Exception as e:
        logger.debug("Unexpected error", exc_info=True)
        console.print(f"\n[red]An error occurred:[/] {e}")
        sys.exit(1)

    print_results(result, options.output_dir)


if __name__ == "__main__":
    main()
