"""
Tests for the ffmpeg render pipeline.

The subprocess is replaced by a fake process so these run without ffmpeg.
"""

import asyncio

import pytest

from lemona_export.exceptions import RenderEngineError
from lemona_export.render.compiler import CompiledProgram
from lemona_export.render.filter_graph import Filter, FilterGraph, InputSource
from lemona_export.render.pipeline import (
    RenderPipeline,
    build_command,
    encoder_options,
    parse_progress_line,
)
from lemona_export.schemas.export import ExportSettings


@pytest.fixture
def program() -> CompiledProgram:
    graph = FilterGraph()
    graph.add(["0:v"], [Filter("null")], ["vout"])
    graph.add(["0:a"], [Filter("anull")], ["aout"])
    return CompiledProgram(
        inputs=[InputSource.file("/media/a.mp4")],
        graph=graph,
        duration_ms=4000,
        background_index=0,
    )


async def _lines(lines: list[bytes]):
    for line in lines:
        yield line


async def _hang():
    await asyncio.sleep(10)
    yield b""


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, stdout, stderr, exit_code: int = 0):
        self.pid = 4242
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = None
        self._exit_code = exit_code
        self.killed = False

    async def wait(self) -> int:
        self.returncode = self._exit_code
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self._exit_code = -9


def _patch_exec(monkeypatch, process: FakeProcess, write_output: bytes | None = b"mp4"):
    calls = []

    async def fake_exec(*cmd, **kwargs):
        calls.append(cmd)
        if write_output is not None:
            with open(cmd[-1], "wb") as f:
                f.write(write_output)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return calls


class TestEncoderOptions:
    @pytest.mark.parametrize("quality,crf,bitrate", [("low", 28, "128k"), ("medium", 23, "192k"), ("high", 18, "256k")])
    def test_quality_tiers(self, quality, crf, bitrate):
        options = encoder_options(ExportSettings(quality=quality, optimization="balanced"), 10_000)
        assert options.crf == crf
        assert options.audio_bitrate == bitrate
        assert options.preset == "medium"

    def test_auto_uses_faster_preset_for_long_exports(self):
        settings = ExportSettings(optimization="auto")
        assert encoder_options(settings, 60_000).preset == "medium"
        assert encoder_options(settings, 240_000).preset == "fast"

    @pytest.mark.parametrize("hint,preset", [("speed", "veryfast"), ("quality", "slow")])
    def test_explicit_hints(self, hint, preset):
        assert encoder_options(ExportSettings(optimization=hint), 1000).preset == preset


class TestBuildCommand:
    def test_command_layout(self, program, settings):
        cmd = build_command(program, ExportSettings(resolution="720p", quality="medium"), "/out/x.mp4", settings)

        assert cmd[0] == "ffmpeg"
        assert cmd[-1] == "/out/x.mp4"
        assert cmd[cmd.index("-i") + 1] == "/media/a.mp4"
        assert cmd[cmd.index("-filter_complex") + 1] == program.filter_complex
        maps = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-map"]
        assert maps == ["[vout]", "[aout]"]
        assert cmd[cmd.index("-crf") + 1] == "23"
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert cmd[cmd.index("-t") + 1] == "4.000"
        assert cmd[cmd.index("-progress") + 1] == "pipe:1"

    def test_inputs_are_emitted_in_order(self, program, settings):
        program.inputs.append(InputSource.lavfi("color=c=black:s=1280x720"))
        cmd = build_command(program, ExportSettings(), "/out/x.mp4", settings)
        first = cmd.index("/media/a.mp4")
        second = cmd.index("color=c=black:s=1280x720")
        assert first < second < cmd.index("-filter_complex")


class TestParseProgressLine:
    def test_out_time(self):
        assert parse_progress_line("out_time_us=2000000", 4000) == pytest.approx(0.5)
        assert parse_progress_line("out_time_ms=1000000", 4000) == pytest.approx(0.25)

    def test_clamped(self):
        assert parse_progress_line("out_time_us=9000000", 4000) == 1.0

    def test_not_available(self):
        assert parse_progress_line("out_time_us=N/A", 4000) is None

    def test_end(self):
        assert parse_progress_line("progress=end", 4000) == 1.0

    def test_other_keys(self):
        assert parse_progress_line("frame=12", 4000) is None
        assert parse_progress_line("progress=continue", 4000) is None


class TestRenderPipeline:
    @pytest.mark.asyncio
    async def test_success_reports_progress(self, program, settings, temp_output_dir, monkeypatch):
        process = FakeProcess(
            _lines([b"out_time_us=2000000\n", b"progress=continue\n", b"out_time_us=4000000\n", b"progress=end\n"]),
            _lines([]),
        )
        calls = _patch_exec(monkeypatch, process)
        reported: list[float] = []
        pids: list[int] = []
        output = str(temp_output_dir / "out.mp4")

        result = await RenderPipeline(settings).run(
            program, ExportSettings(), output, on_progress=reported.append, on_start=pids.append
        )

        assert result == output
        assert len(calls) == 1
        assert pids == [4242]
        assert reported[0] == pytest.approx(0.5)
        assert reported[-1] == 1.0
        assert reported == sorted(reported)

    @pytest.mark.asyncio
    async def test_nonzero_exit_carries_stderr_tail(self, program, settings, temp_output_dir, monkeypatch):
        process = FakeProcess(_lines([]), _lines([b"Invalid filter\n", b"Error opening filters\n"]), exit_code=1)
        _patch_exec(monkeypatch, process)

        with pytest.raises(RenderEngineError) as exc_info:
            await RenderPipeline(settings).run(program, ExportSettings(), str(temp_output_dir / "out.mp4"))

        assert exc_info.value.kind == "render-engine"
        assert "Error opening filters" in exc_info.value.stderr_tail

    @pytest.mark.asyncio
    async def test_empty_output_is_failure(self, program, settings, temp_output_dir, monkeypatch):
        _patch_exec(monkeypatch, FakeProcess(_lines([]), _lines([])), write_output=b"")

        with pytest.raises(RenderEngineError, match="no output"):
            await RenderPipeline(settings).run(program, ExportSettings(), str(temp_output_dir / "out.mp4"))

    @pytest.mark.asyncio
    async def test_missing_binary(self, program, settings, temp_output_dir, monkeypatch):
        async def missing(*cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)
        with pytest.raises(RenderEngineError, match="ffmpeg not found"):
            await RenderPipeline(settings).run(program, ExportSettings(), str(temp_output_dir / "out.mp4"))

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, program, settings, temp_output_dir, monkeypatch):
        process = FakeProcess(_hang(), _lines([]))
        _patch_exec(monkeypatch, process)
        pipeline = RenderPipeline(settings)
        pipeline.timeout_s = 0.05

        with pytest.raises(RenderEngineError, match="timed out"):
            await pipeline.run(program, ExportSettings(), str(temp_output_dir / "out.mp4"))
        assert process.killed
