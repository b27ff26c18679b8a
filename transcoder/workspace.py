import atexit
import logging
import shutil
import tempfile
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

_live: set = set()
_live_lock = threading.Lock()


class Workspace:
    """
    Job-scoped scratch directory:

        <root>/job-<id>-XXXX/
            input/source<ext>
            output/            # everything under here is uploaded

    Use as a context manager; the tree is removed on exit whatever happened
    inside. Anything still alive when the interpreter exits is removed by an
    atexit hook.
    """

    def __init__(self, root: Path, job_id, source_suffix: str = ""):
        self.root = Path(root)
        self.job_id = job_id
        self.source_suffix = source_suffix or ".mp4"
        self.path: Path | None = None

    def __enter__(self) -> "Workspace":
        self.root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"job-{self.job_id}-", dir=self.root))
        self.input_dir.mkdir()
        self.output_dir.mkdir()
        with _live_lock:
            _live.add(self)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.remove()
        return False

    @property
    def input_dir(self) -> Path:
        return self.path / "input"

    @property
    def output_dir(self) -> Path:
        return self.path / "output"

    @property
    def input_file(self) -> Path:
        return self.input_dir / f"source{self.source_suffix}"

    def remove(self):
        """Idempotent."""
        with _live_lock:
            _live.discard(self)
        if self.path is not None and self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            if self.path.exists():
                logger.warning("Workspace %s could not be fully removed", self.path)
            else:
                logger.debug("Removed workspace %s", self.path)


@atexit.register
def _remove_live_workspaces():
    with _live_lock:
        leftovers = list(_live)
    for ws in leftovers:
        ws.remove()
