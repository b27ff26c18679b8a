import logging
import time
from datetime import timedelta

from django.conf import settings
from django.db import DatabaseError
from django.db.models import Q
from django.utils import timezone

from .models import VideoJob

logger = logging.getLogger(__name__)

Status = VideoJob.Status
ACTIVE = (Status.PENDING, Status.PROCESSING)
OUTPUT_FIELDS = ("manifest_url", "thumbnail_url", "waveform_url")


class JobStore:
    """
    Writes to VideoJob rows. Each method is one conditional UPDATE keyed by
    job id, so terminal rows are never touched and status only moves
    forward. Methods return True when a row was changed.
    """

    def __init__(self, failed_write_attempts: int | None = None, failed_write_backoff: float | None = None):
        self.failed_write_attempts = failed_write_attempts or settings.FAILED_WRITE_ATTEMPTS
        self.failed_write_backoff = (
            settings.FAILED_WRITE_BACKOFF if failed_write_backoff is None else failed_write_backoff
        )

    def _rows(self, job_id):
        return VideoJob.objects.filter(pk=job_id)

    def get(self, job_id) -> VideoJob | None:
        return self._rows(job_id).first()

    def is_terminal(self, job_id) -> bool:
        return self._rows(job_id).filter(status__in=VideoJob.TERMINAL).exists()

    def update_status(self, job_id, *, status=None, progress=None, **fields) -> bool:
        """
        Partial update of a non-terminal job. Status only moves forward,
        progress never goes down, and outputs with 100% come only with
        COMPLETED (routed through mark_completed/mark_failed). Returns False
        when the row's current state refuses the change and raises
        ValueError for updates that can never be valid.
        """
        status = Status(status) if status is not None else None
        outputs = {name: fields.pop(name) for name in OUTPUT_FIELDS if name in fields}

        if status == Status.COMPLETED:
            if progress not in (None, 100) or fields or not outputs.get("manifest_url"):
                raise ValueError("COMPLETED takes a manifest_url and optional output URLs only")
            return self.mark_completed(job_id, **outputs)
        if outputs:
            raise ValueError("output URLs are only written together with COMPLETED")
        if status == Status.FAILED:
            if progress is not None or fields:
                raise ValueError("FAILED takes no other fields")
            return self.mark_failed(job_id)

        rows = self._rows(job_id)
        if status == Status.PENDING:
            rows = rows.filter(status=Status.PENDING)
        else:
            rows = rows.filter(status__in=ACTIVE)
        if status is not None:
            fields["status"] = status
        if progress is not None:
            progress = int(progress)
            if not 0 <= progress <= 99:
                raise ValueError("progress must be within 0-99 until COMPLETED")
            rows = rows.filter(progress__lte=progress)
            fields["progress"] = progress
        fields["updated_at"] = timezone.now()
        return rows.update(**fields) > 0

    def mark_processing(self, job_id) -> bool:
        """PENDING -> PROCESSING at 0%. Already PROCESSING counts as success."""
        if self._rows(job_id).filter(status=Status.PENDING).update(
            status=Status.PROCESSING, progress=0, updated_at=timezone.now()
        ):
            return True
        return self._rows(job_id).filter(status=Status.PROCESSING).exists()

    def update_progress(self, job_id, percent: int) -> bool:
        # 100 is reserved for COMPLETED.
        percent = max(0, min(99, int(percent)))
        return self._rows(job_id).filter(status=Status.PROCESSING, progress__lt=percent).update(
            progress=percent, updated_at=timezone.now()
        ) > 0

    def _retrying(self, job_id, what: str, write):
        """Run `write`, retrying database errors; re-raises the last one."""
        for attempt in range(1, self.failed_write_attempts + 1):
            try:
                return write()
            except DatabaseError as e:
                logger.warning(
                    "Job %s: %s write attempt %d/%d failed: %s",
                    job_id, what, attempt, self.failed_write_attempts, e,
                )
                if attempt == self.failed_write_attempts:
                    raise
                time.sleep(self.failed_write_backoff * attempt)

    def mark_completed(self, job_id, *, manifest_url, thumbnail_url=None, waveform_url=None) -> bool:
        """
        PROCESSING -> COMPLETED at 100% with the output URLs. Database errors
        are retried like the FAILED write; the last one propagates.
        """
        return self._retrying(job_id, "COMPLETED", lambda: self._rows(job_id).filter(
            status=Status.PROCESSING
        ).update(
            status=Status.COMPLETED,
            progress=100,
            manifest_url=manifest_url,
            thumbnail_url=thumbnail_url,
            waveform_url=waveform_url,
            lease_holder="",
            lease_expires_at=None,
            updated_at=timezone.now(),
        ) > 0)

    def mark_failed(self, job_id) -> bool:
        """
        Move a non-terminal job to FAILED, retrying database errors a few
        times. Gives up with a log line rather than raising.
        """
        try:
            return self._retrying(job_id, "FAILED", lambda: self._rows(job_id).filter(
                status__in=ACTIVE
            ).update(
                status=Status.FAILED,
                lease_holder="",
                lease_expires_at=None,
                updated_at=timezone.now(),
            ) > 0)
        except DatabaseError:
            logger.error("Job %s: giving up on FAILED write", job_id)
            return False

    # -----------------------------------------------------
    # Lease
    # -----------------------------------------------------
    def acquire_lease(self, job_id, holder: str, seconds: int) -> bool:
        """Take the lease if it is free, expired, or already ours."""
        now = timezone.now()
        free = Q(lease_holder="") | Q(lease_holder=holder) | Q(lease_expires_at__lt=now) | Q(lease_expires_at=None)
        return self._rows(job_id).filter(free, status__in=ACTIVE).update(
            lease_holder=holder,
            lease_expires_at=now + timedelta(seconds=seconds),
            updated_at=now,
        ) > 0

    def renew_lease(self, job_id, holder: str, seconds: int) -> bool:
        return self._rows(job_id).filter(lease_holder=holder, status__in=ACTIVE).update(
            lease_expires_at=timezone.now() + timedelta(seconds=seconds),
            updated_at=timezone.now(),
        ) > 0

    def release_lease(self, job_id, holder: str) -> bool:
        return self._rows(job_id).filter(lease_holder=holder, status__in=ACTIVE).update(
            lease_holder="", lease_expires_at=None, updated_at=timezone.now()
        ) > 0

    def lease_remaining(self, job_id) -> int:
        """Seconds until the current lease runs out (0 if unleased)."""
        job = self.get(job_id)
        if job is None or not job.lease_expires_at:
            return 0
        return max(0, int((job.lease_expires_at - timezone.now()).total_seconds()))
