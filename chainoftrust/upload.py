"""
Artifact upload transports.

The chain of trust feature only needs to hand a named file to a transport;
retries and storage are the transport's business. Transport failures
surface as UploadError so the run is reported failed.
"""

import threading
from abc import ABC, abstractmethod
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple

import requests
from botocore.exceptions import BotoCoreError, ClientError

from .config import WorkerConfig
from .errors import UploadError
from .util import open_no_follow


class Uploader(ABC):
    """Publishes file content under an artifact name."""

    @abstractmethod
    def put(self, artifact_name: str, body: BinaryIO, content_type: str) -> None:
        """
        Publish everything left to read in body.

        Raises:
            UploadError: If the artifact could not be published
        """
        pass

    def upload(self, artifact_name: str, local_path: str, content_type: str) -> None:
        """
        Publish a local regular file. A symlink at local_path is refused.

        Raises:
            UploadError: If the file could not be opened or published
        """
        try:
            body = open_no_follow(local_path)
        except OSError as e:
            raise UploadError(artifact_name, str(e)) from e
        with body:
            self.put(artifact_name, body, content_type)


class InMemoryUploader(Uploader):
    """
    Keeps uploaded bytes in memory, for tests and local runs.

    WARNING: Not suitable for production.
    """

    def __init__(self, fail_on: Optional[List[str]] = None):
        self._artifacts: Dict[str, Tuple[bytes, str]] = {}
        self._order: List[str] = []
        self._fail_on = set(fail_on or [])
        self._lock = threading.Lock()

    def put(self, artifact_name: str, body: BinaryIO, content_type: str) -> None:
        if artifact_name in self._fail_on:
            raise UploadError(artifact_name, "upload rejected by transport")
        try:
            data = body.read()
        except OSError as e:
            raise UploadError(artifact_name, str(e)) from e
        with self._lock:
            self._artifacts[artifact_name] = (data, content_type)
            self._order.append(artifact_name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._order)

    def content(self, artifact_name: str) -> bytes:
        with self._lock:
            return self._artifacts[artifact_name][0]

    def content_type(self, artifact_name: str) -> str:
        with self._lock:
            return self._artifacts[artifact_name][1]


class S3Uploader(Uploader):
    """Writes each artifact of a run as an object under a per-run prefix."""

    def __init__(self, bucket: str, prefix: str, client=None):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self._client = client

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            import boto3
            self._client = boto3.client("s3")
        return self._client

    def put(self, artifact_name: str, body: BinaryIO, content_type: str) -> None:
        key = f"{self.prefix}{artifact_name}"
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (OSError, BotoCoreError, ClientError) as e:
            raise UploadError(artifact_name, str(e)) from e


class PutUrlUploader(Uploader):
    """
    PUTs each artifact to a pre-signed URL.

    url_for(artifact_name, content_type) is supplied by the queue client and
    returns the URL to PUT to.
    """

    def __init__(self, url_for: Callable[[str, str], str], session=None, timeout_seconds: int = 300):
        self.url_for = url_for
        self.timeout_seconds = timeout_seconds
        self._session = session

    def _get_session(self):
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def put(self, artifact_name: str, body: BinaryIO, content_type: str) -> None:
        try:
            url = self.url_for(artifact_name, content_type)
            resp = self._get_session().put(
                url,
                data=body,
                headers={"Content-Type": content_type},
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
        except (OSError, requests.RequestException) as e:
            raise UploadError(artifact_name, str(e)) from e


def get_uploader(
    config: WorkerConfig,
    task_id: str,
    run_id: int,
    url_for: Optional[Callable[[str, str], str]] = None
) -> Uploader:
    """Create the uploader selected by configuration for one task run."""
    if config.upload_backend == "s3":
        prefix = f"{config.s3_prefix.rstrip('/')}/{task_id}/{run_id}/"
        return S3Uploader(bucket=config.s3_bucket, prefix=prefix)
    if config.upload_backend == "put_url":
        if url_for is None:
            raise ValueError("put_url upload backend requires a url resolver")
        return PutUrlUploader(url_for=url_for)
    return InMemoryUploader()
