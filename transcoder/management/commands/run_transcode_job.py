import os

from django.core.management.base import BaseCommand, CommandError
from rest_framework.exceptions import ValidationError

from transcoder.executors import build_pipeline
from transcoder.messages import JobMessage


class Command(BaseCommand):
    help = (
        "Run the transcode pipeline once for the job described by JOB_ID, "
        "SOURCE_KEY and OWNER_ID. Entry point of the sandbox container; "
        "exits non-zero when the job fails."
    )

    def handle(self, *args, **options):
        try:
            message = JobMessage.from_env(os.environ)
        except ValidationError as e:
            raise CommandError(f"Missing or invalid job environment: {e.detail}")

        self.stdout.write(f"Starting sandboxed job {message.job_id}")
        outcome = build_pipeline().run(message)
        if not outcome.succeeded:
            raise CommandError(f"Job {message.job_id} failed")
        self.stdout.write(self.style.SUCCESS(f"Job {message.job_id} {outcome.value}"))
