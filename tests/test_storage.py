import io

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from enrollpay.core.config import settings
from enrollpay.services.storage import S3Storage, StorageError


class StubS3Client:
    def __init__(self, error=None):
        self.error = error
        self.objects = {}

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def put_object(self, Bucket, Key, Body, ContentType):
        self._maybe_fail()
        self.objects[Key] = Body

    def get_object(self, Bucket, Key):
        self._maybe_fail()
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        self._maybe_fail()
        return f"https://s3.test/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


def test_put_get_round_trip():
    storage = S3Storage(bucket="enrollment-docs", client=StubS3Client())
    storage.put("consent-documents/a.pdf", b"%PDF", content_type="application/pdf")
    assert storage.get("consent-documents/a.pdf") == b"%PDF"
    assert storage.signed_url("consent-documents/a.pdf", expires_in=60).endswith("X-Amz-Expires=60")


def test_missing_object():
    storage = S3Storage(bucket="enrollment-docs", client=StubS3Client())
    with pytest.raises(FileNotFoundError):
        storage.get("signatures/nope.png.enc")


@pytest.mark.parametrize("error", [
    EndpointConnectionError(endpoint_url="https://s3.test"),
    NoCredentialsError(),
    ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"),
])
def test_client_and_transport_errors_become_storage_errors(error):
    storage = S3Storage(bucket="enrollment-docs", client=StubS3Client(error=error))
    with pytest.raises(StorageError):
        storage.put("k", b"data")
    with pytest.raises(StorageError):
        storage.get("k")
    with pytest.raises(StorageError):
        storage.signed_url("k")


def test_unconfigured_bucket(monkeypatch):
    monkeypatch.setattr(settings, "S3_BUCKET", None)
    with pytest.raises(StorageError):
        S3Storage(client=StubS3Client()).put("k", b"data")
