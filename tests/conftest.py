"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "warning")

import io
from datetime import datetime, timezone
from typing import Optional

import pytest
from botocore.exceptions import ClientError

from infrastructure.external.storage.providers.local import LocalStore
from infrastructure.external.storage.providers.s3 import S3Store
from infrastructure.external.storage.utils import calculate_etag


def client_error(code: str, status: int, operation: str = "HeadObject") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client.

    Mirrors the calls S3Store makes and raises real botocore ``ClientError``
    shapes for missing objects.
    """

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        # Keys reported back in DeleteObjects "Errors"
        self.delete_errors: dict[str, str] = {}
        # 1-based indexes of delete_objects calls that raise
        self.failing_delete_batches: set[int] = set()
        # Exceptions raised by the next head_object calls, in order
        self.head_failures: list[Exception] = []
        self._delete_batches = 0

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))

    def calls_to(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream",
            metadata: Optional[dict] = None) -> None:
        self.objects[key] = {
            "Body": data,
            "ContentType": content_type,
            "Metadata": dict(metadata or {}),
            "ETag": f'"{calculate_etag(data)}"',
            "LastModified": datetime.now(timezone.utc),
        }

    def upload_fileobj(self, Fileobj, Bucket, Key, ExtraArgs=None, Config=None, Callback=None):
        self._record("upload_fileobj", Bucket=Bucket, Key=Key, ExtraArgs=ExtraArgs, Config=Config)
        extra = ExtraArgs or {}
        self.put(Key, Fileobj.read(), extra.get("ContentType", "binary/octet-stream"), extra.get("Metadata"))

    def download_fileobj(self, Bucket, Key, Fileobj, ExtraArgs=None, Callback=None, Config=None):
        self._record("download_fileobj", Bucket=Bucket, Key=Key, Config=Config)
        obj = self.objects.get(Key)
        if obj is None:
            raise client_error("404", 404, "HeadObject")
        Fileobj.write(obj["Body"])
        if Callback is not None:
            Callback(len(obj["Body"]))

    def get_object(self, Bucket, Key):
        self._record("get_object", Bucket=Bucket, Key=Key)
        obj = self.objects.get(Key)
        if obj is None:
            raise client_error("NoSuchKey", 404, "GetObject")
        return {"Body": io.BytesIO(obj["Body"]), "ContentLength": len(obj["Body"])}

    def head_object(self, Bucket, Key):
        self._record("head_object", Bucket=Bucket, Key=Key)
        if self.head_failures:
            raise self.head_failures.pop(0)
        obj = self.objects.get(Key)
        if obj is None:
            raise client_error("404", 404, "HeadObject")
        response = {
            "ContentLength": len(obj["Body"]),
            "ContentType": obj["ContentType"],
            "ETag": obj["ETag"],
            "Metadata": obj["Metadata"],
        }
        if obj.get("LastModified") is not None:
            response["LastModified"] = obj["LastModified"]
        return response

    def delete_object(self, Bucket, Key):
        self._record("delete_object", Bucket=Bucket, Key=Key)
        self.objects.pop(Key, None)
        return {}

    def delete_objects(self, Bucket, Delete):
        self._record("delete_objects", Bucket=Bucket, Delete=Delete)
        self._delete_batches += 1
        if self._delete_batches in self.failing_delete_batches:
            raise client_error("InternalError", 500, "DeleteObjects")
        errors = []
        for item in Delete["Objects"]:
            key = item["Key"]
            if key in self.delete_errors:
                errors.append({"Key": key, "Code": self.delete_errors[key], "Message": "failed"})
                continue
            self.objects.pop(key, None)
        return {"Errors": errors} if errors else {}

    def list_objects_v2(self, Bucket, MaxKeys=1000, Prefix="", StartAfter=""):
        self._record("list_objects_v2", Bucket=Bucket, MaxKeys=MaxKeys, Prefix=Prefix, StartAfter=StartAfter)
        keys = sorted(k for k in self.objects if k.startswith(Prefix) and k > StartAfter)
        page = keys[:MaxKeys]
        contents = [
            {
                "Key": k,
                "Size": len(self.objects[k]["Body"]),
                "ETag": self.objects[k]["ETag"],
                "LastModified": self.objects[k]["LastModified"],
            }
            for k in page
        ]
        response = {"IsTruncated": len(keys) > MaxKeys, "KeyCount": len(page)}
        if contents:
            response["Contents"] = contents
        return response

    def copy_object(self, Bucket, Key, CopySource):
        self._record("copy_object", Bucket=Bucket, Key=Key, CopySource=CopySource)
        source = self.objects.get(CopySource["Key"])
        if source is None:
            raise client_error("NoSuchKey", 404, "CopyObject")
        self.objects[Key] = dict(source)
        return {}

    def head_bucket(self, Bucket):
        self._record("head_bucket", Bucket=Bucket)
        return {}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self._record("generate_presigned_url", ClientMethod=ClientMethod, Params=Params, ExpiresIn=ExpiresIn)
        return f"https://{Params['Bucket']}.example.test/{Params['Key']}?expires={ExpiresIn}"


@pytest.fixture
def make_client_error():
    return client_error


@pytest.fixture
def local_store(tmp_path) -> LocalStore:
    return LocalStore(str(tmp_path / "blobs"))


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def s3_store(fake_s3) -> S3Store:
    return S3Store(fake_s3, "test-bucket", region="us-east-1")
