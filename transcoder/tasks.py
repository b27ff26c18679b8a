from celery import shared_task
from celery.exceptions import Reject
from celery.utils.log import get_task_logger
from django.conf import settings
from rest_framework.exceptions import ValidationError

from .errors import LeaseUnavailable
from .executors import get_executor
from .jobstore import JobStore
from .lease import LeaseHeartbeat
from .messages import JobMessage

logger = get_task_logger(__name__)

TRANSCODE_QUEUE = "transcode_queue"


class TranscodeFailed(Exception):
    pass


@shared_task(bind=True, name="transcoder.transcode_video", acks_late=True, max_retries=None)
def transcode_video(self, payload: dict) -> dict:
    """
    Consume one JobMessage. Success returns normally (ack); failure raises
    TranscodeFailed and is left to the queue's own policy. A job leased by
    another live worker is retried once that lease can have run out.
    """
    try:
        message = JobMessage.from_payload(payload)
    except ValidationError as e:
        logger.error("Dropping malformed job message %r: %s", payload, e.detail)
        raise Reject(f"malformed job message: {e.detail}", requeue=False)

    jobs = JobStore()
    job = jobs.get(message.job_id)
    if job is None:
        logger.error("Dropping message for unknown job %s", message.job_id)
        raise Reject(f"unknown job {message.job_id}", requeue=False)
    if job.is_terminal:
        logger.info("Job %s is already %s; acknowledging redelivery", job.id, job.status)
        return {"ok": True, "job_id": message.job_id, "skipped": True}

    try:
        with LeaseHeartbeat(jobs, message.job_id, settings.JOB_LEASE_SECONDS) as lease:
            ok = get_executor().run(message)
    except LeaseUnavailable as e:
        logger.info("%s", e)
        raise self.retry(exc=e, countdown=e.retry_in)

    if lease.lost.is_set():
        logger.warning("Job %s: lease was lost while running", message.job_id)

    if not ok:
        # The pipeline normally finalizes itself; a dead sandbox can't.
        if not jobs.is_terminal(message.job_id):
            jobs.mark_failed(message.job_id)
        raise TranscodeFailed(f"transcode failed for job {message.job_id}")

    return {"ok": True, "job_id": message.job_id}


def enqueue_transcode(job):
    """Publish the JobMessage for a freshly created VideoJob."""
    message = JobMessage.for_job(job)
    return transcode_video.apply_async(args=[message.to_payload()], queue=TRANSCODE_QUEUE)
