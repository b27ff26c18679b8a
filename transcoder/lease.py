import logging
import os
import socket
import threading
import uuid

from django.db import DatabaseError, close_old_connections, connection

from .errors import LeaseUnavailable

logger = logging.getLogger(__name__)


def make_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaseHeartbeat:
    """
    Holds the job-row lease for the duration of a `with` block, renewing it
    from a background thread every third of the lease length.

    Raises LeaseUnavailable on entry when another holder's lease is live.
    """

    def __init__(self, store, job_id, seconds: int, holder: str | None = None):
        self.store = store
        self.job_id = job_id
        self.seconds = seconds
        self.holder = holder or make_holder_id()
        self.interval = max(1.0, seconds / 3.0)
        self.lost = threading.Event()
        self._stop = threading.Event()
        self._thread = None

    def __enter__(self):
        if not self.store.acquire_lease(self.job_id, self.holder, self.seconds):
            raise LeaseUnavailable(self.job_id, retry_in=max(1, self.store.lease_remaining(self.job_id)))
        self._thread = threading.Thread(
            target=self._run, name=f"lease-{self.job_id}", daemon=True
        )
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 5)
        try:
            self.store.release_lease(self.job_id, self.holder)
        except DatabaseError as e:
            logger.warning("Job %s: could not release lease: %s", self.job_id, e)
        return False

    def _run(self):
        try:
            while not self._stop.wait(self.interval):
                try:
                    renewed = self.store.renew_lease(self.job_id, self.holder, self.seconds)
                except DatabaseError as e:
                    logger.warning("Job %s: lease renewal failed: %s", self.job_id, e)
                    close_old_connections()
                    continue
                if not renewed:
                    # Terminal, or taken over after we missed renewals.
                    logger.warning("Job %s: lease no longer held by %s", self.job_id, self.holder)
                    self.lost.set()
                    return
        finally:
            connection.close()
