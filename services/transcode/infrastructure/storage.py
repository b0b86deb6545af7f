from __future__ import annotations

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..application.interfaces import StorageGateway
from ..config import TranscodeConfig
from ..domain.errors import TransientIOError


def create_s3_client(config: TranscodeConfig):
    return boto3.client(
        "s3",
        endpoint_url=config.storage_endpoint_url,
        region_name=config.storage_region,
        aws_access_key_id=config.storage_access_key,
        aws_secret_access_key=config.storage_secret_key,
        config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
    )


class S3StorageGateway(StorageGateway):
    def __init__(self, client, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    def download(self, object_key: str, destination_path: str) -> None:
        try:
            self._client.download_file(self._bucket, object_key, destination_path)
        except (BotoCoreError, ClientError) as exc:
            raise TransientIOError(
                f"Download of {self._bucket}/{object_key} failed: {exc}"
            ) from exc

    def upload(
        self, object_key: str, source_path: str, content_type: str | None = None
    ) -> None:
        extra_args = {"ContentType": content_type} if content_type else None
        self._client.upload_file(
            source_path, self._bucket, object_key, ExtraArgs=extra_args
        )

    def delete(self, object_key: str) -> None:
        self._client.delete_object(Bucket=self._bucket, Key=object_key)

    def list(self, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys


def create_storage_gateway(config: TranscodeConfig, client=None) -> StorageGateway:
    return S3StorageGateway(client or create_s3_client(config), config.storage_bucket)
