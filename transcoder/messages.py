from dataclasses import dataclass

from rest_framework import serializers

ENV_JOB_ID = "JOB_ID"
ENV_SOURCE_KEY = "SOURCE_KEY"
ENV_OWNER_ID = "OWNER_ID"


class JobMessageSerializer(serializers.Serializer):
    job_id = serializers.UUIDField()
    source_key = serializers.CharField(max_length=512)
    owner_id = serializers.CharField(max_length=128)


@dataclass(frozen=True)
class JobMessage:
    """What the queue carries: enough to run the pipeline without a lookup."""
    job_id: str
    source_key: str
    owner_id: str

    @classmethod
    def from_payload(cls, payload: dict) -> "JobMessage":
        """Raises rest_framework ValidationError on a malformed payload."""
        ser = JobMessageSerializer(data=payload)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        return cls(job_id=str(data["job_id"]), source_key=data["source_key"], owner_id=data["owner_id"])

    @classmethod
    def from_env(cls, environ) -> "JobMessage":
        return cls.from_payload({
            "job_id": environ.get(ENV_JOB_ID),
            "source_key": environ.get(ENV_SOURCE_KEY),
            "owner_id": environ.get(ENV_OWNER_ID),
        })

    @classmethod
    def for_job(cls, job) -> "JobMessage":
        return cls(job_id=str(job.id), source_key=job.source_key, owner_id=job.owner_id)

    def to_payload(self) -> dict:
        return {"job_id": self.job_id, "source_key": self.source_key, "owner_id": self.owner_id}

    def to_env(self) -> dict:
        return {ENV_JOB_ID: self.job_id, ENV_SOURCE_KEY: self.source_key, ENV_OWNER_ID: self.owner_id}
