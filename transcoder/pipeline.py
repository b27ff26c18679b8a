"""
Transcode pipeline for one VideoJob:

    download -> probe -> thumbnail -> waveform -> HLS encode -> upload -> finalize

Stages run strictly in that order inside a Workspace that is removed on
every exit path. Any fatal stage error finalizes the job as FAILED; a
missing waveform never does. The store, job store and external tools are
passed in so tests can run the whole thing against fakes.
"""

import enum
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from django.conf import settings
from django.db import DatabaseError
from PIL import Image, UnidentifiedImageError

from .errors import (
    DownloadError,
    EncodeError,
    ObjectNotFound,
    PipelineError,
    StorageError,
    ThumbnailError,
    UploadError,
    WaveformError,
)
from .ffmpeg import (
    MASTER_PLAYLIST,
    hls_command,
    run_ffmpeg,
    thumbnail_command,
    waveform_command,
)
from .ladder import select_ladder
from .probe import probe
from .workspace import Workspace

logger = logging.getLogger(__name__)

THUMBNAIL_NAME = "thumbnail.jpg"
WAVEFORM_NAME = "waveform.png"

# Progress checkpoints (percent). The encode stage fills ENCODE_START..ENCODE_END.
AFTER_DOWNLOAD = 5
AFTER_PROBE = 10
AFTER_THUMBNAIL = 15
ENCODE_START = 20
ENCODE_END = 90
AFTER_ENCODE = 90
AFTER_UPLOAD = 95


class Outcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # job already terminal, or missing

    @property
    def succeeded(self) -> bool:
        return self is not Outcome.FAILED


@dataclass(frozen=True)
class PipelineConfig:
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    workspace_root: Path = Path("temp")
    key_prefix: str = "hls"
    segment_seconds: int = 10
    thumbnail_width: int = 640
    thumbnail_required: bool = True
    waveform_size: str = "1280x240"
    progress_min_interval: float = 5.0
    ffmpeg_timeout: float | None = None

    @classmethod
    def from_settings(cls) -> "PipelineConfig":
        return cls(
            ffmpeg_bin=settings.FFMPEG_BIN,
            ffprobe_bin=settings.FFPROBE_BIN,
            workspace_root=Path(settings.TRANSCODE_WORKSPACE_ROOT),
            key_prefix=settings.HLS_KEY_PREFIX,
            segment_seconds=settings.HLS_SEGMENT_SECONDS,
            thumbnail_width=settings.THUMBNAIL_WIDTH,
            thumbnail_required=settings.THUMBNAIL_REQUIRED,
            waveform_size=settings.WAVEFORM_SIZE,
            progress_min_interval=settings.PROGRESS_MIN_INTERVAL,
            ffmpeg_timeout=settings.FFMPEG_TIMEOUT,
        )


@dataclass
class StageOutputs:
    manifest_key: str
    thumbnail_key: str | None
    waveform_key: str | None


class ProgressThrottle:
    """
    Rate-limits progress writes: a value is written only if it is higher
    than the last one written and `min_interval` seconds have passed.
    """

    def __init__(self, write, min_interval: float, clock=time.monotonic):
        self.write = write
        self.min_interval = min_interval
        self.clock = clock
        self.last_percent = -1
        self.last_write_at = None

    def __call__(self, percent: int) -> bool:
        if percent <= self.last_percent:
            return False
        now = self.clock()
        if self.last_write_at is not None and now - self.last_write_at < self.min_interval:
            return False
        self.write(percent)
        self.last_percent = percent
        self.last_write_at = now
        return True


def _is_image(path: Path) -> bool:
    """True if `path` exists and Pillow can parse it as an image."""
    if not path.exists():
        return False
    try:
        with Image.open(path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        return False
    return True


def _span(fraction: float, start: int, end: int) -> int:
    return start + int((end - start) * fraction)


class TranscodePipeline:
    def __init__(self, store, jobs, config: PipelineConfig, *, prober=probe, runner=run_ffmpeg, clock=time.monotonic):
        self.store = store
        self.jobs = jobs
        self.config = config
        self.prober = prober
        self.runner = runner
        self.clock = clock

    def run(self, message) -> Outcome:
        job_id = message.job_id
        if self.jobs.is_terminal(job_id):
            logger.info("Job %s already terminal; ignoring redelivery", job_id)
            return Outcome.SKIPPED
        if not self.jobs.mark_processing(job_id):
            logger.warning("Job %s not found or no longer active; skipping", job_id)
            return Outcome.SKIPPED

        logger.info("Processing job %s (source=%s)", job_id, message.source_key)
        started = self.clock()
        try:
            with Workspace(self.config.workspace_root, job_id, Path(message.source_key).suffix) as ws:
                outputs = self._run_stages(message, ws)
        except PipelineError as e:
            logger.error("Job %s failed at %s: %s", job_id, e.stage, e)
            self.jobs.mark_failed(job_id)
            return Outcome.FAILED
        except Exception:
            logger.exception("Job %s crashed", job_id)
            self.jobs.mark_failed(job_id)
            raise

        try:
            done = self.jobs.mark_completed(
                job_id,
                manifest_url=self.store.public_url(outputs.manifest_key),
                thumbnail_url=self.store.public_url(outputs.thumbnail_key) if outputs.thumbnail_key else None,
                waveform_url=self.store.public_url(outputs.waveform_key) if outputs.waveform_key else None,
            )
        except DatabaseError as e:
            logger.error("Job %s: could not record completion: %s", job_id, e)
            self.jobs.mark_failed(job_id)
            return Outcome.FAILED
        if not done:
            logger.warning("Job %s left PROCESSING before it could be completed", job_id)
            return Outcome.SKIPPED
        logger.info("Job %s completed in %.1fs", job_id, self.clock() - started)
        return Outcome.COMPLETED

    # -----------------------------------------------------
    # Stages
    # -----------------------------------------------------
    def _run_stages(self, message, ws: Workspace) -> StageOutputs:
        job_id = message.job_id

        self._download(message.source_key, ws.input_file)
        self._progress(job_id, AFTER_DOWNLOAD)

        info = self.prober(ws.input_file, self.config.ffprobe_bin)
        renditions = select_ladder(info.height)
        logger.info(
            "Job %s: %dx%d, %.1fs, audio=%s -> %s",
            job_id, info.width, info.height, info.duration, info.has_audio,
            ",".join(r.name for r in renditions),
        )
        self._progress(job_id, AFTER_PROBE)

        thumbnail = self._thumbnail(ws, info)
        self._progress(job_id, AFTER_THUMBNAIL)

        try:
            waveform = self._waveform(ws, info)
        except WaveformError as e:
            logger.info("Job %s: skipping waveform: %s", job_id, e)
            waveform = None
        self._progress(job_id, ENCODE_START)

        self._encode(job_id, ws, info, renditions)
        self._progress(job_id, AFTER_ENCODE)

        prefix = f"{self.config.key_prefix}/{message.owner_id}/{job_id}"
        self._upload(ws.output_dir, prefix)
        self._progress(job_id, AFTER_UPLOAD)

        return StageOutputs(
            manifest_key=f"{prefix}/{MASTER_PLAYLIST}",
            thumbnail_key=f"{prefix}/{THUMBNAIL_NAME}" if thumbnail else None,
            waveform_key=f"{prefix}/{WAVEFORM_NAME}" if waveform else None,
        )

    def _download(self, key: str, dest: Path):
        try:
            self.store.download(key, dest)
        except ObjectNotFound as e:
            raise DownloadError(f"source object missing: {key}") from e
        except StorageError as e:
            raise DownloadError(str(e)) from e

    def _thumbnail(self, ws: Workspace, info) -> Path | None:
        out = ws.output_dir / THUMBNAIL_NAME
        cmd = thumbnail_command(
            self.config.ffmpeg_bin, ws.input_file, out,
            duration=info.duration, width=self.config.thumbnail_width,
        )
        result = self.runner(cmd, timeout=self.config.ffmpeg_timeout)
        if result.ok and _is_image(out):
            return out
        error = result.error or "no readable thumbnail written"
        if self.config.thumbnail_required:
            raise ThumbnailError(error)
        logger.warning("Thumbnail failed, continuing without one: %s", error)
        out.unlink(missing_ok=True)
        return None

    def _waveform(self, ws: Workspace, info) -> Path:
        if not info.has_audio:
            raise WaveformError("no audio track present")
        out = ws.output_dir / WAVEFORM_NAME
        cmd = waveform_command(self.config.ffmpeg_bin, ws.input_file, out, size=self.config.waveform_size)
        result = self.runner(cmd, timeout=self.config.ffmpeg_timeout)
        if not (result.ok and _is_image(out)):
            out.unlink(missing_ok=True)
            raise WaveformError(result.error or "no readable waveform written")
        return out

    def _encode(self, job_id, ws: Workspace, info, renditions):
        for r in renditions:
            (ws.output_dir / r.name).mkdir(exist_ok=True)
        cmd = hls_command(
            self.config.ffmpeg_bin, ws.input_file, ws.output_dir, renditions,
            segment_seconds=self.config.segment_seconds, has_audio=info.has_audio,
        )
        throttle = ProgressThrottle(
            lambda pct: self._progress(job_id, pct),
            self.config.progress_min_interval,
            clock=self.clock,
        )
        result = self.runner(
            cmd,
            duration=info.duration,
            on_progress=lambda fraction: throttle(_span(fraction, ENCODE_START, ENCODE_END)),
            timeout=self.config.ffmpeg_timeout,
        )
        if not result.ok:
            raise EncodeError(result.error or "ffmpeg failed")
        if not (ws.output_dir / MASTER_PLAYLIST).exists():
            raise EncodeError("encoder reported success but wrote no master playlist")

    def _upload(self, output_dir: Path, prefix: str):
        try:
            self.store.upload_tree(output_dir, prefix)
        except StorageError as e:
            raise UploadError(str(e)) from e

    def _progress(self, job_id, percent: int):
        # Progress is advisory; a failed write must not fail the job.
        try:
            self.jobs.update_progress(job_id, percent)
        except DatabaseError as e:
            logger.warning("Job %s: progress write failed: %s", job_id, e)
