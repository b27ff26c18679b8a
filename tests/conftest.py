import io
from pathlib import Path

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from PIL import Image

from transcoder.ffmpeg import FFmpegResult, MASTER_PLAYLIST
from transcoder.jobstore import JobStore
from transcoder.models import VideoJob
from transcoder.pipeline import PipelineConfig, TranscodePipeline
from transcoder.probe import MediaInfo
from transcoder.storage import ArtifactStore

PUBLIC_BASE = "https://cdn.example.test/video-saas"


class FakeS3Client:
    """Just enough of the boto3 S3 client for ArtifactStore."""

    def __init__(self, objects=None, fail_upload_after=None):
        self.objects = dict(objects or {})
        self.uploads = []  # (key, content_type)
        self.fail_upload_after = fail_upload_after

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        data = self.objects[Key]
        return {"Body": StreamingBody(io.BytesIO(data), len(data))}

    def upload_file(self, Filename, Bucket, Key, ExtraArgs=None):
        if self.fail_upload_after is not None and len(self.uploads) >= self.fail_upload_after:
            raise ClientError({"Error": {"Code": "InternalError", "Message": "boom"}}, "PutObject")
        self.objects[Key] = Path(Filename).read_bytes()
        self.uploads.append((Key, (ExtraArgs or {}).get("ContentType")))


class FakeFFmpeg:
    """
    Stands in for run_ffmpeg. Writes plausible outputs for each kind of
    command and records what it was asked to do.
    """

    def __init__(self, fail=(), progress=(0.1, 0.4, 0.7, 1.0)):
        self.fail = set(fail)
        self.progress = progress
        self.calls = []

    def __call__(self, cmd, *, duration=0.0, on_progress=None, timeout=None):
        target = Path(cmd[-1])
        if target.name == "thumbnail.jpg":
            kind = "thumbnail"
        elif target.name == "waveform.png":
            kind = "waveform"
        else:
            kind = "encode"
        self.calls.append((kind, cmd))
        if kind in self.fail:
            return FFmpegResult(ok=False, returncode=1, error=f"{kind} exploded")

        if kind == "thumbnail":
            Image.new("RGB", (640, 360), "navy").save(target, format="JPEG")
        elif kind == "waveform":
            Image.new("RGB", (1280, 240), "white").save(target, format="PNG")
        else:
            out_dir = target.parent.parent
            names = [
                part.split("name:", 1)[1]
                for entry in cmd[cmd.index("-var_stream_map") + 1].split(" ")
                for part in entry.split(",")
                if part.startswith("name:")
            ]
            for name in names:
                (out_dir / name).mkdir(exist_ok=True)
                (out_dir / name / "index.m3u8").write_text("#EXTM3U\n")
                (out_dir / name / "segment_000.ts").write_bytes(b"\x47" * 188)
            (out_dir / MASTER_PLAYLIST).write_text("#EXTM3U\n")
            for fraction in self.progress:
                if on_progress:
                    on_progress(fraction)
        return FFmpegResult(ok=True, returncode=0)

    def kinds(self):
        return [k for k, _ in self.calls]


def fixed_prober(height=1080, has_audio=True, duration=30.0):
    def _probe(path, ffprobe_bin="ffprobe"):
        return MediaInfo(width=height * 16 // 9, height=height, duration=duration, has_audio=has_audio)
    return _probe


class RecordingJobStore(JobStore):
    """Real JobStore that also remembers every progress value written."""

    def __init__(self):
        super().__init__(failed_write_attempts=2, failed_write_backoff=0)
        self.progress_writes = []

    def update_progress(self, job_id, percent):
        self.progress_writes.append(percent)
        return super().update_progress(job_id, percent)


@pytest.fixture
def workspace_root(tmp_path):
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def s3_client():
    return FakeS3Client({"uploads/clip.mp4": b"\x00\x00\x00\x18ftypmp42"})


@pytest.fixture
def artifact_store(s3_client):
    return ArtifactStore(s3_client, "video-saas", PUBLIC_BASE)


@pytest.fixture
def job_store():
    return RecordingJobStore()


@pytest.fixture
def video_job(db):
    return VideoJob.objects.create(
        owner_id="user-1",
        source_key="uploads/clip.mp4",
        original_name="clip.mp4",
    )


@pytest.fixture
def ffmpeg():
    return FakeFFmpeg()


@pytest.fixture
def make_pipeline(artifact_store, job_store, workspace_root, ffmpeg):
    def _make(*, prober=None, runner=None, **config):
        cfg = PipelineConfig(workspace_root=workspace_root, progress_min_interval=0, **config)
        return TranscodePipeline(
            artifact_store,
            job_store,
            cfg,
            prober=prober or fixed_prober(),
            runner=runner or ffmpeg,
        )
    return _make
