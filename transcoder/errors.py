class PipelineError(Exception):
    """Base for every error that aborts (or skips) a pipeline stage."""

    stage = "pipeline"
    fatal = True


class DownloadError(PipelineError):
    stage = "download"


class ProbeError(PipelineError):
    stage = "probe"


class ThumbnailError(PipelineError):
    stage = "thumbnail"


class WaveformError(PipelineError):
    stage = "waveform"
    fatal = False


class EncodeError(PipelineError):
    stage = "encode"


class UploadError(PipelineError):
    stage = "upload"


class StorageError(Exception):
    pass


class ObjectNotFound(StorageError):
    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


class StorageTransportError(StorageError):
    pass


class LeaseUnavailable(Exception):
    """Another worker holds a live lease on the job."""

    def __init__(self, job_id, retry_in: int):
        super().__init__(f"Job {job_id} is leased elsewhere; retry in {retry_in}s")
        self.job_id = job_id
        self.retry_in = retry_in
