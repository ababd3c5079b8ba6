from __future__ import annotations

import json
import os
import threading
from datetime import date, datetime

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from fhir_export.core import config
from fhir_export.core.errors import BucketCreationError, ConfigurationError, ObjectStoringError
from fhir_export.core.logging import log
from fhir_export.etl.aggregator import OutputGroup
from fhir_export.etl.enrich import build_bundle

FHIR_JSON = "application/fhir+json"


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def encode_bundle(bundle: dict) -> bytes:
    return json.dumps(bundle, ensure_ascii=False, separators=(",", ":"), default=_json_default).encode("utf-8")


class ObjectStore:
    def upload(self, bucket: str, object_name: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError


class S3ObjectStore(ObjectStore):
    """S3-compatible store (AWS, MinIO). Buckets are created on first use."""

    def __init__(
        self,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        access_key: str | None = None,
        secret_key: str | None = None,
        client=None,
    ):
        self.region = region
        if client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4"),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            if access_key and secret_key:
                client_kwargs["aws_access_key_id"] = access_key
                client_kwargs["aws_secret_access_key"] = secret_key
            client = boto3.client(**client_kwargs)
        self.client = client
        self._lock = threading.Lock()
        self._known_buckets: set[str] = set()
        log.info("s3_store_initialized", endpoint=endpoint_url, region=region)

    def ensure_bucket(self, bucket: str) -> None:
        with self._lock:
            if bucket in self._known_buckets:
                return
            try:
                self.client.head_bucket(Bucket=bucket)
            except ClientError as exc:
                code = str(exc.response.get("Error", {}).get("Code"))
                if code not in ("404", "NoSuchBucket", "NotFound"):
                    raise BucketCreationError(bucket, str(exc)) from exc
                log.info("s3_bucket_creating", bucket=bucket)
                kwargs = {"Bucket": bucket}
                if self.region and self.region != "us-east-1":
                    kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
                try:
                    self.client.create_bucket(**kwargs)
                except (ClientError, BotoCoreError) as create_exc:
                    raise BucketCreationError(bucket, str(create_exc)) from create_exc
            except BotoCoreError as exc:
                raise BucketCreationError(bucket, str(exc)) from exc
            self._known_buckets.add(bucket)

    def upload(self, bucket: str, object_name: str, data: bytes, content_type: str) -> None:
        self.ensure_bucket(bucket)
        try:
            self.client.put_object(Bucket=bucket, Key=object_name, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoringError(object_name, bucket, str(exc)) from exc
        log.info("s3_object_written", bucket=bucket, key=object_name, size=len(data))


class LocalObjectStore(ObjectStore):
    """Writes objects to <base_dir>/<bucket>/<object_name>, for development."""

    def __init__(self, base_dir: str = config.EXPORT_DIR):
        self.base_dir = base_dir

    def upload(self, bucket: str, object_name: str, data: bytes, content_type: str) -> None:
        path = os.path.join(self.base_dir, bucket)
        full_path = os.path.join(path, object_name)
        try:
            os.makedirs(path, exist_ok=True)
            with open(full_path, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise ObjectStoringError(object_name, bucket, str(exc)) from exc
        log.info("local_object_written", path=full_path, size=len(data))


def build_object_store() -> ObjectStore:
    if config.OBJECT_STORE == "s3":
        return S3ObjectStore(config.S3_ENDPOINT_URL, config.S3_REGION, config.S3_ACCESS_KEY, config.S3_SECRET_KEY)
    if config.OBJECT_STORE == "local":
        return LocalObjectStore(config.EXPORT_DIR)
    raise ConfigurationError(f"Unknown object store '{config.OBJECT_STORE}', expected 's3' or 'local'")


class BundleWriter:
    def __init__(self, store: ObjectStore, bucket: str = config.S3_BUCKET):
        self.store = store
        self.bucket = bucket

    def write(self, group: OutputGroup) -> str:
        bundle = build_bundle(group)
        object_name = f"{bundle['id']}.json"
        self.store.upload(self.bucket, object_name, encode_bundle(bundle), FHIR_JSON)
        return object_name
