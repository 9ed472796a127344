import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from PIL import Image

import convert_media
from convert_media import (
    ConversionCancelled,
    ConversionOptions,
    confirm_options,
    gather_options,
    main,
    parse_arguments,
)
from media_paths import PathSelection


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)


@pytest.fixture
def answers(monkeypatch: pytest.MonkeyPatch):
    """Script the rich prompts: text, integer and yes/no answers are queued separately."""
    queues: dict[str, list] = {"text": [], "int": [], "confirm": []}

    def feeder(name: str):
        def ask(*args, **kwargs):
            if not queues[name]:
                raise AssertionError(f"unexpected {name} prompt: {args[:1]}")
            return queues[name].pop(0)

        return ask

    monkeypatch.setattr(convert_media.Prompt, "ask", feeder("text"))
    monkeypatch.setattr(convert_media.IntPrompt, "ask", feeder("int"))
    monkeypatch.setattr(convert_media.Confirm, "ask", feeder("confirm"))

    def queue(*, text=(), ints=(), confirm=()) -> dict[str, list]:
        queues["text"].extend(text)
        queues["int"].extend(ints)
        queues["confirm"].extend(confirm)
        return queues

    return queue


@pytest.fixture
def photos(tmp_path: Path) -> Path:
    root = tmp_path / "photos"
    (root / "trip").mkdir(parents=True)
    Image.new("RGB", (320, 240), (200, 30, 30)).save(root / "a.png")
    Image.new("RGB", (240, 320), (30, 200, 30)).save(root / "trip" / "b.jpg")
    (root / "readme.txt").write_text("not media")
    return root


class TestGatherOptions:
    def test_collects_every_answer(self, answers, photos: Path, tmp_path: Path) -> None:
        answers(text=["images", str(photos), str(tmp_path / "out")], ints=[250, 75])

        options = gather_options(video_support=False)

        assert options.media_type == "images"
        assert options.selection.root == photos.resolve()
        assert options.target_size_kb == 250
        assert options.quality == 75
        assert options.output_dir == (tmp_path / "out").resolve()
        assert options.wants_images and not options.wants_videos

    def test_reprompts_on_bad_paths(self, answers, photos: Path, tmp_path: Path) -> None:
        queues = answers(
            text=["both", "../etc", str(tmp_path / "missing"), str(photos), "./out"],
            ints=[100, 100],
        )

        options = gather_options(video_support=True)

        assert options.selection.valid_paths == (photos.resolve(),)
        assert options.wants_images and options.wants_videos
        assert queues["text"] == []

    def test_reprompts_on_out_of_range_numbers(self, answers, photos: Path) -> None:
        answers(text=["images", str(photos), "./out"], ints=[0, -3, 50, 101, 90])

        options = gather_options(video_support=False)

        assert options.target_size_kb == 50
        assert options.quality == 90

    def test_empty_path_cancels(self, answers) -> None:
        answers(text=["images", "   "])

        with pytest.raises(ConversionCancelled):
            gather_options(video_support=False)


def test_declining_confirmation_cancels(answers, photos: Path, tmp_path: Path) -> None:
    answers(confirm=[False])
    options = ConversionOptions(
        media_type="images",
        selection=PathSelection(is_multiple=False, valid_paths=(photos,)),
        target_size_kb=100,
        quality=80,
        output_dir=tmp_path / "out",
    )

    with pytest.raises(ConversionCancelled):
        confirm_options(options)


def test_convert_media_without_matches(tmp_path: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    options = ConversionOptions(
        media_type="images",
        selection=PathSelection(is_multiple=False, valid_paths=(empty,)),
        target_size_kb=100,
        quality=80,
        output_dir=tmp_path / "out",
    )

    result = convert_media.convert_media(options, workers=2, video_support=False)

    assert result.total == 0
    assert result.finished


def test_budget_miss_is_reported_once_after_progress(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    caplog: pytest.LogCaptureFixture,
) -> None:
    source = tmp_path / "noise"
    source.mkdir()
    Image.effect_noise((800, 800), 100).convert("RGB").save(source / "noise.png")
    options = ConversionOptions(
        media_type="images",
        selection=PathSelection(is_multiple=False, valid_paths=(source,)),
        target_size_kb=1,
        quality=100,
        output_dir=tmp_path / "out",
    )

    with caplog.at_level(logging.WARNING):
        result = convert_media.convert_media(options, workers=1, video_support=False)

    captured = capsys.readouterr()
    assert len(result.warnings) == 1
    assert not [r for r in caplog.records if "Cannot achieve target size" in r.getMessage()]
    assert "Cannot achieve target size" not in captured.err
    assert captured.out.count("Cannot achieve target size") == 1
    assert captured.out.index("1 warning(s)") < captured.out.index("Cannot achieve target size")


class TestMain:
    @pytest.fixture(autouse=True)
    def _no_ffmpeg(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(convert_media, "ffmpeg_available", lambda: False)

    def test_cancel_exits_cleanly(self, answers) -> None:
        answers(text=["images", ""])

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 0

    def test_converts_folder_with_mirrored_layout(
        self, answers, photos: Path, tmp_path: Path
    ) -> None:
        out = tmp_path / "out"
        answers(text=["images", str(photos), str(out)], ints=[100, 80], confirm=[True])

        main(["-j", "2"])

        assert sorted(p.relative_to(out).as_posix() for p in out.rglob("*.webp")) == [
            "a.webp",
            "trip/b.webp",
        ]
        with Image.open(out / "trip" / "b.webp") as img:
            assert img.format == "WEBP"
            assert img.size == (240, 320)

    def test_rerun_ignores_previous_output(self, answers, photos: Path) -> None:
        out = photos / "converted"
        for _ in range(2):
            answers(text=["images", str(photos), str(out)], ints=[100, 80], confirm=[True])
            main([])

        assert sorted(p.name for p in out.rglob("*")) == ["a.webp", "b.webp", "trip"]

    def test_interrupt_during_batch_exits_130(
        self, answers, photos: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        answers(text=["images", str(photos), str(tmp_path / "out")], ints=[100, 80], confirm=[True])

        def interrupted(*args, **kwargs):
            raise KeyboardInterrupt

        monkeypatch.setattr(convert_media, "run_batch", interrupted)

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 130

    def test_output_path_is_a_file(self, answers, photos: Path, tmp_path: Path) -> None:
        target = tmp_path / "taken"
        target.write_text("x")
        answers(text=["images", str(photos), str(target)], ints=[100, 80], confirm=[True])

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 1


class TestParseArguments:
    def test_defaults(self) -> None:
        args = parse_arguments([])

        assert args.jobs >= 1
        assert args.verbose is False

    def test_jobs_and_verbose(self) -> None:
        args = parse_arguments(["--jobs", "3", "-v"])

        assert args.jobs == 3
        assert args.verbose is True

    def test_rejects_zero_jobs(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            parse_arguments(["--jobs", "0"])

        assert exc_info.value.code == 2

    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit):
            parse_arguments(["--version"])

        assert convert_media.__version__ in capsys.readouterr().out
