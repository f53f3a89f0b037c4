from __future__ import annotations

from dataclasses import replace
from unittest.mock import Mock, patch

from botocore.exceptions import EndpointConnectionError
import pytest
import structlog
from structlog.testing import capture_logs

from conftest import access_denied_error, provisioning_request, s3_client_with_pages
from pvc_injector.errors import ObjectStoreError
from pvc_injector.models import SizeSummary
from pvc_injector.objectstore import ObjectStoreGateway, SizeEstimator, build_s3_client


def _gateway(s3_client: Mock) -> ObjectStoreGateway:
    return ObjectStoreGateway(logger=structlog.get_logger("test"), client_factory=lambda _source: s3_client)


def test_summarize_with_multiple_pages_counts_every_object() -> None:
    s3_client = s3_client_with_pages(
        [
            {"Contents": [{"Key": "imagenet/train/a", "Size": 10}, {"Key": "imagenet/train/b", "Size": 20}]},
            {"Contents": [{"Key": "imagenet/train/deep/nested/c", "Size": 30}]},
        ]
    )

    summary = _gateway(s3_client).summarize(provisioning_request().source)

    assert summary == SizeSummary(object_count=3, total_bytes=60)
    s3_client.get_paginator.assert_called_once_with("list_objects_v2")
    s3_client.get_paginator.return_value.paginate.assert_called_once_with(Bucket="datasets", Prefix="imagenet/train")


def test_summarize_with_empty_prefix_returns_zero_summary() -> None:
    s3_client = s3_client_with_pages([{"KeyCount": 0}])

    summary = _gateway(s3_client).summarize(provisioning_request().source)

    assert summary == SizeSummary(object_count=0, total_bytes=0)


def test_summarize_with_client_error_raises_object_store_error_tagged_with_sizing() -> None:
    s3_client = s3_client_with_pages([{"Contents": [{"Key": "a", "Size": 1}]}, access_denied_error()])

    with pytest.raises(ObjectStoreError) as error:
        _gateway(s3_client).summarize(provisioning_request().source)

    assert error.value.step == "sizing"
    assert str(error.value) == "unable to list objects in 'datasets/imagenet/train': AccessDenied (Access Denied)"


def test_summarize_with_unreachable_endpoint_logs_and_raises() -> None:
    s3_client = s3_client_with_pages([EndpointConnectionError(endpoint_url="http://minio.storage:9000")])

    with capture_logs() as logs:
        gateway = _gateway(s3_client)
        with pytest.raises(ObjectStoreError, match="Could not connect"):
            gateway.summarize(provisioning_request().source)

    assert [entry["event"] for entry in logs] == ["objectstore.list.failed"]
    assert logs[0]["bucket"] == "datasets"
    assert "s3cr3t" not in str(logs[0])


def test_summarize_with_unparseable_endpoint_raises_object_store_error() -> None:
    gateway = ObjectStoreGateway(logger=structlog.get_logger("test"))
    source = replace(provisioning_request().source, endpoint="minio storage:9000")

    with pytest.raises(ObjectStoreError) as error:
        gateway.summarize(source)

    assert error.value.step == "sizing"
    assert "Invalid endpoint" in str(error.value)


def test_size_estimator_logs_summary_without_credentials() -> None:
    gateway = Mock()
    gateway.summarize.return_value = SizeSummary(object_count=2, total_bytes=42)

    with capture_logs() as logs:
        estimator = SizeEstimator(gateway, logger=structlog.get_logger("test"))
        summary = estimator.summarize(provisioning_request().source)

    assert summary.total_bytes == 42
    assert logs[0]["event"] == "size.summarized"
    assert logs[0]["origin"] == "minio.storage:9000/datasets/imagenet/train"
    assert "s3cr3t" not in str(logs)


def test_build_s3_client_targets_endpoint_with_path_addressing() -> None:
    source = provisioning_request().source

    with patch("pvc_injector.objectstore.boto3.client") as client_factory:
        build_s3_client(source)

    _, kwargs = client_factory.call_args
    assert client_factory.call_args.args == ("s3",)
    assert kwargs["endpoint_url"] == "http://minio.storage:9000"
    assert kwargs["aws_access_key_id"] == "AKIAEXAMPLE"
    assert kwargs["aws_secret_access_key"] == "s3cr3t"
    assert kwargs["config"].s3 == {"addressing_style": "path"}


def test_object_store_source_repr_hides_credentials() -> None:
    text = repr(provisioning_request().source)

    assert "s3cr3t" not in text
    assert "AKIAEXAMPLE" not in text
    assert "minio.storage:9000" in text
