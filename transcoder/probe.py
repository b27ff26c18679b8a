import json
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import ProbeError


@dataclass(frozen=True)
class MediaInfo:
    width: int
    height: int
    duration: float  # seconds, 0.0 when the container doesn't say
    has_audio: bool


def probe(input_path: Path, ffprobe_bin: str = "ffprobe", timeout: int = 120) -> MediaInfo:
    """
    Read stream geometry with ffprobe. Raises ProbeError when there is no
    decodable video stream.
    """
    cmd = [
        ffprobe_bin,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(input_path),
    ]
    try:
        p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ProbeError(f"ffprobe could not run: {e}") from e
    if p.returncode != 0:
        raise ProbeError(p.stderr.strip() or f"ffprobe exited with code {p.returncode}")

    try:
        data = json.loads(p.stdout or "{}")
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe returned invalid JSON: {e}") from e
    return parse_probe_output(data)


def parse_probe_output(data: dict) -> MediaInfo:
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video" and s.get("height")), None)
    if video is None:
        raise ProbeError("no readable video stream")

    try:
        width = int(video.get("width") or 0)
        height = int(video["height"])
    except (TypeError, ValueError) as e:
        raise ProbeError(f"bad video geometry: {e}") from e
    if height <= 0:
        raise ProbeError(f"bad video height: {height}")

    return MediaInfo(
        width=width,
        height=height,
        duration=_duration(data, video),
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )


def _duration(data: dict, video: dict) -> float:
    for raw in ((data.get("format") or {}).get("duration"), video.get("duration")):
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if value > 0:
            return value
    return 0.0
