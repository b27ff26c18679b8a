import io
from pathlib import Path

import pytest
from hypothesis import given, strategies as st

from transcoder import ffmpeg
from transcoder.ffmpeg import (
    hls_command,
    parse_progress_line,
    run_ffmpeg,
    thumbnail_command,
    waveform_command,
)
from transcoder.ladder import select_ladder


def arg_after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


def test_thumbnail_seeks_to_twenty_percent():
    cmd = thumbnail_command("ffmpeg", Path("in.mp4"), Path("out/thumbnail.jpg"), duration=50.0, width=640)
    assert arg_after(cmd, "-ss") == "10.000"
    assert arg_after(cmd, "-vf") == "scale=640:-2"
    assert arg_after(cmd, "-frames:v") == "1"
    assert cmd[-1] == "out/thumbnail.jpg"


def test_waveform_uses_first_audio_stream():
    cmd = waveform_command("ffmpeg", Path("in.mp4"), Path("out/waveform.png"), size="1280x240")
    assert "showwavespic=s=1280x240" in arg_after(cmd, "-filter_complex")
    assert arg_after(cmd, "-filter_complex").startswith("[0:a:0]")


def test_hls_command_one_branch_per_rendition():
    out = Path("/work/output")
    cmd = hls_command("ffmpeg", Path("in.mp4"), out, select_ladder(1080), segment_seconds=10)

    graph = arg_after(cmd, "-filter_complex")
    assert graph.startswith("[0:v:0]split=3[v0][v1][v2]")
    assert "[v0]scale=-2:360[v0out]" in graph
    assert "[v2]scale=-2:1080[v2out]" in graph

    assert arg_after(cmd, "-var_stream_map") == "v:0,a:0,name:360p v:1,a:1,name:720p v:2,a:2,name:1080p"
    assert arg_after(cmd, "-b:v:0") == "800k"
    assert arg_after(cmd, "-maxrate:v:2") == "5350k"
    assert arg_after(cmd, "-bufsize:v:1") == "4200k"
    assert arg_after(cmd, "-b:a:2") == "192k"
    assert arg_after(cmd, "-hls_time") == "10"
    assert arg_after(cmd, "-hls_list_size") == "0"
    assert arg_after(cmd, "-master_pl_name") == "master.m3u8"
    assert arg_after(cmd, "-hls_segment_filename") == str(out / "%v" / "segment_%03d.ts")
    assert cmd[-1] == str(out / "%v" / "index.m3u8")


def test_hls_command_without_audio_maps_video_only():
    cmd = hls_command("ffmpeg", Path("in.mp4"), Path("out"), select_ladder(720), has_audio=False)
    assert "0:a:0" not in cmd
    assert arg_after(cmd, "-var_stream_map") == "v:0,name:360p v:1,name:720p"


def test_hls_command_needs_renditions():
    with pytest.raises(ValueError):
        hls_command("ffmpeg", Path("in.mp4"), Path("out"), [])


def test_parse_progress_line():
    assert parse_progress_line("out_time_ms=5000000", 10.0) == pytest.approx(0.5)
    assert parse_progress_line("out_time_ms=99000000", 10.0) == 1.0
    assert parse_progress_line("frame=12", 10.0) is None
    assert parse_progress_line("out_time_ms=N/A", 10.0) is None
    assert parse_progress_line("out_time_ms=5000000", 0.0) is None


@given(st.integers(min_value=-10**9, max_value=10**12), st.floats(min_value=0.1, max_value=10**5))
def test_progress_fraction_is_bounded(micros, duration):
    fraction = parse_progress_line(f"out_time_ms={micros}", duration)
    assert 0.0 <= fraction <= 1.0


class FakePopen:
    instances = []

    def __init__(self, argv, stdout=None, stderr=None, lines=(), returncode=0, stderr_text=""):
        self.argv = argv
        self.stdout = io.BytesIO("".join(f"{line}\n" for line in lines).encode())
        self.returncode = None
        self._final = returncode
        self.killed = False
        self.waited = False
        if stderr_text:
            stderr.write(stderr_text.encode())
        FakePopen.instances.append(self)

    def wait(self, timeout=None):
        self.waited = True
        self.returncode = self._final
        return self.returncode

    def poll(self):
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9


def patch_popen(monkeypatch, **behaviour):
    FakePopen.instances = []
    monkeypatch.setattr(
        ffmpeg.subprocess, "Popen", lambda argv, stdout=None, stderr=None: FakePopen(argv, stdout, stderr, **behaviour)
    )


def test_run_ffmpeg_reports_progress(monkeypatch):
    patch_popen(monkeypatch, lines=["frame=1", "out_time_ms=2500000", "out_time_ms=2500000", "out_time_ms=10000000", "progress=end"])
    seen = []
    result = run_ffmpeg(["ffmpeg", "-i", "in.mp4", "out.m3u8"], duration=10.0, on_progress=seen.append)

    assert result.ok
    assert seen == [0.25, 1.0]
    proc = FakePopen.instances[0]
    assert proc.argv[:4] == ["ffmpeg", "-nostats", "-progress", "pipe:1"]
    assert proc.waited


def test_run_ffmpeg_failure_returns_stderr_tail(monkeypatch):
    patch_popen(monkeypatch, returncode=1, stderr_text="Conversion failed!")
    result = run_ffmpeg(["ffmpeg", "-i", "in.mp4", "out.m3u8"])
    assert not result.ok
    assert result.returncode == 1
    assert "Conversion failed!" in result.error


def test_run_ffmpeg_kills_child_when_callback_raises(monkeypatch):
    patch_popen(monkeypatch, lines=["out_time_ms=1000000"])

    def explode(fraction):
        raise RuntimeError("callback broke")

    with pytest.raises(RuntimeError):
        run_ffmpeg(["ffmpeg", "x"], duration=10.0, on_progress=explode)
    assert FakePopen.instances[0].killed


def test_run_ffmpeg_missing_binary(monkeypatch):
    def boom(argv, stdout=None, stderr=None):
        raise FileNotFoundError("ffmpeg")

    monkeypatch.setattr(ffmpeg.subprocess, "Popen", boom)
    result = run_ffmpeg(["ffmpeg", "x"])
    assert not result.ok
    assert result.returncode is None
