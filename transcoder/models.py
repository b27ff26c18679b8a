import uuid
from django.db import models


class VideoJob(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING"
        PROCESSING = "PROCESSING"
        COMPLETED = "COMPLETED"
        FAILED = "FAILED"

    TERMINAL = (Status.COMPLETED, Status.FAILED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner_id = models.CharField(max_length=128, db_index=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    source_key = models.CharField(max_length=512)     # object-store key of the upload
    original_name = models.CharField(max_length=255)
    progress = models.PositiveSmallIntegerField(default=0)  # 0..100

    # Set once, on the transition to COMPLETED.
    manifest_url = models.URLField(max_length=1024, null=True, blank=True)
    thumbnail_url = models.URLField(max_length=1024, null=True, blank=True)
    waveform_url = models.URLField(max_length=1024, null=True, blank=True)

    # Renewable worker lease; empty holder means unleased.
    lease_holder = models.CharField(max_length=255, blank=True, default="")
    lease_expires_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "video_jobs"
        ordering = ["-created_at"]

    def __str__(self):
        return f"VideoJob({self.id}, {self.status}, {self.progress}%)"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL

    @property
    def outputs(self) -> dict:
        return {
            "manifest_url": self.manifest_url,
            "thumbnail_url": self.thumbnail_url,
            "waveform_url": self.waveform_url,
        }
