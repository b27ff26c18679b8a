import logging
from pathlib import Path

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .errors import ObjectNotFound, StorageTransportError

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".m2ts": "video/mp2t",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def get_s3_client():
    """
    SDK client for server-side upload/download.
    """
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,  # e.g. http://127.0.0.1:9000
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
            retries={"max_attempts": 5, "mode": "standard"},
        ),
    )


def content_type_for(path) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def _is_not_found(err: ClientError) -> bool:
    return str(err.response.get("Error", {}).get("Code")) in NOT_FOUND_CODES


class ArtifactStore:
    """
    Get/put of byte objects against one S3-compatible bucket. Every failure
    surfaces as ObjectNotFound or StorageTransportError.
    """

    def __init__(self, client, bucket: str, public_base_url: str):
        self.client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls) -> "ArtifactStore":
        return cls(get_s3_client(), settings.S3_BUCKET, settings.S3_PUBLIC_BASE_URL)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def download(self, key: str, local_path: Path) -> Path:
        """Stream object `key` into `local_path`."""
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
            body = resp["Body"]
            with open(local_path, "wb") as f:
                for chunk in body.iter_chunks(chunk_size=1024 * 1024):
                    f.write(chunk)
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFound(key) from e
            raise StorageTransportError(f"GET {key} failed: {e}") from e
        except (BotoCoreError, OSError) as e:
            raise StorageTransportError(f"GET {key} failed: {e}") from e
        return local_path

    def upload_file(self, local_path, key: str, content_type: str | None = None):
        """
        Upload a single file with a Content-Type picked from its extension
        unless one is given.
        """
        extra = {"ContentType": content_type or content_type_for(local_path)}
        try:
            self.client.upload_file(str(local_path), self.bucket, key, ExtraArgs=extra)
        except (ClientError, BotoCoreError, OSError) as e:
            raise StorageTransportError(f"PUT {key} failed: {e}") from e

    def upload_tree(self, local_dir, key_prefix: str) -> list[str]:
        """
        Upload every file under local_dir, depth-first, keyed by
        `key_prefix/<relative path>`. Returns the keys written, in order.
        Objects already written stay written if a later one fails.
        """
        base = Path(local_dir)
        keys = []
        for path in _walk_depth_first(base):
            rel = path.relative_to(base).as_posix()
            key = f"{key_prefix.rstrip('/')}/{rel}"
            self.upload_file(path, key)
            keys.append(key)
        logger.info("Uploaded %d objects under %s", len(keys), key_prefix)
        return keys


def _walk_depth_first(directory: Path):
    for entry in sorted(directory.iterdir()):
        if entry.is_dir():
            yield from _walk_depth_first(entry)
        elif entry.is_file():
            yield entry
