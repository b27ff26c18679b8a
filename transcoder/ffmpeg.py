"""
ffmpeg invocations for the transcode pipeline.

Commands are built as argv lists from typed inputs. `run_ffmpeg` owns the
child process: it is always reaped, and failures come back as an
FFmpegResult instead of an exception.
"""

import logging
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .ladder import Rendition, declaration_order

logger = logging.getLogger(__name__)

MASTER_PLAYLIST = "master.m3u8"
VARIANT_PLAYLIST = "index.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"

STDERR_TAIL_CHARS = 4000


@dataclass(frozen=True)
class FFmpegResult:
    ok: bool
    returncode: Optional[int]
    error: Optional[str] = None


def thumbnail_command(
    ffmpeg_bin: str, input_path: Path, output_path: Path, *, duration: float, width: int
) -> list[str]:
    """One still frame at 20% of the duration, scaled to `width` (even height)."""
    seek = max(0.0, duration * 0.2)
    return [
        ffmpeg_bin,
        "-y",
        "-ss", f"{seek:.3f}",
        "-i", str(input_path),
        "-frames:v", "1",
        "-vf", f"scale={width}:-2",
        str(output_path),
    ]


def waveform_command(ffmpeg_bin: str, input_path: Path, output_path: Path, *, size: str) -> list[str]:
    return [
        ffmpeg_bin,
        "-y",
        "-i", str(input_path),
        "-filter_complex", f"[0:a:0]aformat=channel_layouts=mono,showwavespic=s={size}",
        "-frames:v", "1",
        str(output_path),
    ]


def hls_command(
    ffmpeg_bin: str,
    input_path: Path,
    output_dir: Path,
    renditions: list[Rendition],
    *,
    segment_seconds: int = 10,
    has_audio: bool = True,
) -> list[str]:
    """
    Single invocation producing every rendition: the decoded video is split
    into one branch per rendition, each branch scaled and encoded with its
    own bitrate settings, and packaged as HLS with a master playlist.
    """
    variants = declaration_order(renditions)
    n = len(variants)
    if n == 0:
        raise ValueError("at least one rendition is required")

    split_labels = [f"[v{i}]" for i in range(n)]
    filters = [f"[0:v:0]split={n}{''.join(split_labels)}"]
    for i, r in enumerate(variants):
        filters.append(f"[v{i}]scale=-2:{r.target_height}[v{i}out]")

    cmd = [ffmpeg_bin, "-y", "-i", str(input_path), "-filter_complex", ";".join(filters)]

    stream_map = []
    for i, r in enumerate(variants):
        cmd += [
            "-map", f"[v{i}out]",
            f"-c:v:{i}", "libx264",
            f"-b:v:{i}", r.video_bitrate,
            f"-maxrate:v:{i}", r.maxrate,
            f"-bufsize:v:{i}", r.bufsize,
        ]
        entry = f"v:{i}"
        if has_audio:
            cmd += [
                "-map", "0:a:0",
                f"-c:a:{i}", "aac",
                f"-b:a:{i}", r.audio_bitrate,
                f"-ac:a:{i}", "2",
            ]
            entry += f",a:{i}"
        stream_map.append(f"{entry},name:{r.name}")

    cmd += [
        "-preset", "veryfast",
        "-g", "48",
        "-sc_threshold", "0",
        "-f", "hls",
        "-hls_time", str(segment_seconds),
        "-hls_list_size", "0",
        "-hls_playlist_type", "vod",
        "-hls_segment_filename", str(output_dir / "%v" / SEGMENT_PATTERN),
        "-master_pl_name", MASTER_PLAYLIST,
        "-var_stream_map", " ".join(stream_map),
        str(output_dir / "%v" / VARIANT_PLAYLIST),
    ]
    return cmd


def parse_progress_line(line: str, duration: float) -> Optional[float]:
    """Turn an `out_time_ms=` line from `-progress` into a 0..1 fraction."""
    if duration <= 0 or not line.startswith("out_time_ms="):
        return None
    try:
        # Despite the name ffmpeg reports microseconds here.
        seconds = int(line.split("=", 1)[1]) / 1_000_000.0
    except (ValueError, IndexError):
        return None
    return max(0.0, min(1.0, seconds / duration))


def run_ffmpeg(
    cmd: list[str],
    *,
    duration: float = 0.0,
    on_progress: Optional[Callable[[float], None]] = None,
    timeout: Optional[float] = None,
) -> FFmpegResult:
    """
    Run ffmpeg to completion, feeding fractional progress to `on_progress`.
    The child is killed on timeout or on any exception raised while reading,
    and is waited on in every case.
    """
    argv = [cmd[0], "-nostats", "-progress", "pipe:1", *cmd[1:]]
    logger.debug("ffmpeg: %s", " ".join(argv))

    # stderr goes to a file so a chatty encoder can't fill the pipe and stall.
    with tempfile.TemporaryFile(mode="w+b") as err_file:
        try:
            proc = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=err_file)
        except OSError as e:
            return FFmpegResult(ok=False, returncode=None, error=f"could not start ffmpeg: {e}")

        timed_out = threading.Event()

        def _kill():
            timed_out.set()
            proc.kill()

        timer = threading.Timer(timeout, _kill) if timeout else None
        if timer:
            timer.daemon = True
            timer.start()
        try:
            last = -1.0
            for raw in proc.stdout:
                fraction = parse_progress_line(raw.decode("utf-8", errors="ignore").strip(), duration)
                if fraction is not None and fraction > last and on_progress:
                    last = fraction
                    on_progress(fraction)
            proc.wait()
        finally:
            if timer:
                timer.cancel()
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()

        if timed_out.is_set():
            return FFmpegResult(ok=False, returncode=proc.returncode, error=f"ffmpeg timed out after {timeout}s")
        if proc.returncode != 0:
            err_file.seek(0)
            stderr = err_file.read().decode("utf-8", errors="ignore").strip()
            return FFmpegResult(
                ok=False,
                returncode=proc.returncode,
                error=stderr[-STDERR_TAIL_CHARS:] or f"ffmpeg exited with code {proc.returncode}",
            )
    return FFmpegResult(ok=True, returncode=0)
