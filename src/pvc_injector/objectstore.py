from __future__ import annotations

from typing import Any, Callable, Iterator

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from .errors import ObjectStoreError, error_message
from .models import ObjectStoreSource, SizeSummary

ClientFactory = Callable[[ObjectStoreSource], Any]


def build_s3_client(source: ObjectStoreSource) -> Any:
    """Build an S3 client for an S3 or MinIO endpoint given as ``host[:port]``."""
    return boto3.client(
        "s3",
        endpoint_url=f"{source.scheme}://{source.endpoint}",
        aws_access_key_id=source.access_key,
        aws_secret_access_key=source.secret_key,
        config=BotoConfig(
            retries={"max_attempts": 1, "mode": "standard"},
            s3={"addressing_style": "path"},
        ),
    )


class ObjectStoreGateway:
    def __init__(
        self,
        *,
        logger: structlog.stdlib.BoundLogger,
        client_factory: ClientFactory = build_s3_client,
    ) -> None:
        self._log = logger.bind(component="objectstore")
        self._client_factory = client_factory

    def iter_object_sizes(self, source: ObjectStoreSource) -> Iterator[tuple[str, int]]:
        """Yield ``(key, size)`` for every object under the bucket/prefix, recursively.

        botocore rejects a malformed endpoint URL with ``ValueError`` while the
        client is being built.
        """
        s3_client = self._client_factory(source)
        paginator = s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=source.bucket, Prefix=source.prefix):
            for item in page.get("Contents", []):
                yield item["Key"], int(item.get("Size", 0))

    def summarize(self, source: ObjectStoreSource) -> SizeSummary:
        object_count = 0
        total_bytes = 0
        try:
            for _key, size in self.iter_object_sizes(source):
                object_count += 1
                total_bytes += size
        except (ClientError, BotoCoreError, ValueError) as error:
            self._log.warning(
                "objectstore.list.failed",
                endpoint=source.endpoint,
                bucket=source.bucket,
                prefix=source.prefix,
                error=error_message(error),
            )
            raise ObjectStoreError(
                _format_listing_error(source=source, error=error),
                step="sizing",
            ) from error

        return SizeSummary(object_count=object_count, total_bytes=total_bytes)


class SizeEstimator:
    """Standalone count/size query over the object store."""

    def __init__(self, gateway: ObjectStoreGateway, *, logger: structlog.stdlib.BoundLogger) -> None:
        self._gateway = gateway
        self._log = logger.bind(component="size_estimator")

    def summarize(self, source: ObjectStoreSource) -> SizeSummary:
        summary = self._gateway.summarize(source)
        self._log.info(
            "size.summarized",
            origin=source.origin,
            objects=summary.object_count,
            bytes=summary.total_bytes,
        )
        return summary


def _format_listing_error(*, source: ObjectStoreSource, error: Exception) -> str:
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code") or "unknown"
        message = details.get("Message") or error_message(error)
        return f"unable to list objects in '{source.bucket}/{source.prefix}': {code} ({message})"
    return f"unable to list objects in '{source.bucket}/{source.prefix}': {error_message(error)}"
