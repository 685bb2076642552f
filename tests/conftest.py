from __future__ import annotations

import io
import os
import shutil
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest
from botocore.exceptions import ClientError
from s3_range_reader import S3Context, reset_default_context

if TYPE_CHECKING:
    from collections.abc import Generator

    from botocore.client import BaseClient
    from pytest_databases._service import DockerService


OBJECT_BUCKET = "my-bucket"
OBJECT_KEY = "path/to/file.tif"
LOCATION = (
    "s3://my-bucket/path/to/file.tif"
    "?region=eu-central-1&endpoint=https://s3.example.com"
)


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if shutil.which("docker"):
        return
    skip = pytest.mark.skip(reason="docker is not available")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None]:
    """Hide IIO_* and S3_RANGE_READER_* variables from the developer's shell."""
    for name in list(os.environ):
        if name.upper().startswith(("IIO_", "S3_RANGE_READER_")):
            monkeypatch.delenv(name)
    yield
    reset_default_context()


class FakeS3Client:
    """Minimal stand-in for a boto3 S3 client serving in-memory objects."""

    def __init__(
        self, objects: dict[tuple[str, str], bytes], *, delay: float = 0.0
    ) -> None:
        self.objects = objects
        self.delay = delay
        self.calls: list[tuple[str, str, str | None, str]] = []
        self.failures: dict[str, ClientError] = {}
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def get_object(self, Bucket: str, Key: str, Range: str | None = None):  # noqa: N803
        with self._lock:
            self.calls.append((Bucket, Key, Range, threading.current_thread().name))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if Range in self.failures:
                raise self.failures[Range]
            if (Bucket, Key) not in self.objects:
                raise client_error("NoSuchKey", 404, "GetObject")
            data = self.objects[(Bucket, Key)]
            if Range is not None:
                start, end = (int(v) for v in Range.removeprefix("bytes=").split("-"))
                if start >= len(data):
                    raise client_error("InvalidRange", 416, "GetObject")
                data = data[start : end + 1]
            return {"Body": io.BytesIO(data), "ContentLength": len(data)}
        finally:
            with self._lock:
                self.in_flight -= 1

    def close(self) -> None:
        self.closed = True


def client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


@pytest.fixture
def object_bytes() -> bytes:
    return bytes(range(256)) * 4


@pytest.fixture
def fake_s3(object_bytes: bytes) -> FakeS3Client:
    return FakeS3Client({(OBJECT_BUCKET, OBJECT_KEY): object_bytes})


@pytest.fixture
def context(fake_s3: FakeS3Client) -> Generator[S3Context]:
    ctx = S3Context(client_factory=lambda config: fake_s3)
    yield ctx
    ctx.close()


@dataclass
class MinioService:
    endpoint: str
    access_key: str
    secret_key: str
    secure: bool


@pytest.fixture(scope="session")
def minio_access_key() -> str:
    return os.getenv("MINIO_ACCESS_KEY", "minio")


@pytest.fixture(scope="session")
def minio_secret_key() -> str:
    return os.getenv("MINIO_SECRET_KEY", "minio123")


@pytest.fixture(scope="session")
def minio_service_name() -> str:
    return "minio-range-reader"


@pytest.fixture(scope="session")
def minio_service(
    docker_service: DockerService,
    minio_access_key: str,
    minio_secret_key: str,
    minio_service_name: str,
) -> Generator[MinioService]:
    from urllib.error import URLError
    from urllib.request import Request, urlopen

    from pytest_databases.types import ServiceContainer

    def check(_service: ServiceContainer) -> bool:
        url = f"http://{_service.host}:{_service.port}/minio/health/ready"
        try:
            with urlopen(url=Request(url, method="GET"), timeout=10) as response:
                return response.status == 200
        except (URLError, ConnectionError):
            return False

    with docker_service.run(
        image="quay.io/minio/minio",
        name=minio_service_name,
        command="server /data",
        container_port=9000,
        timeout=20,
        pause=0.5,
        env={
            "MINIO_ROOT_USER": minio_access_key,
            "MINIO_ROOT_PASSWORD": minio_secret_key,
        },
        check=check,
    ) as service:
        yield MinioService(
            endpoint=f"http://{service.host}:{service.port}",
            access_key=minio_access_key,
            secret_key=minio_secret_key,
            secure=False,
        )


@pytest.fixture
def minio_client(minio_service: MinioService) -> BaseClient:
    """A plain boto3 client used to seed objects."""
    import boto3
    from botocore.config import Config

    return boto3.client(
        "s3",
        endpoint_url=minio_service.endpoint,
        aws_access_key_id=minio_service.access_key,
        aws_secret_access_key=minio_service.secret_key,
        region_name="us-east-1",
        config=Config(s3={"addressing_style": "path"}),
    )
