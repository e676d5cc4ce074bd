"""sagemaker_pilot.aws_clients — Lazy-singleton AWS service clients.

Factory functions create boto3 clients on first call and cache them. Creation
is serialized by a lock because batch invocation may first touch a client from
several worker threads. Every component also accepts an explicit client, which
is what the tests use.
"""

from __future__ import annotations

import threading
from typing import Optional

import boto3
from botocore.config import Config

from sagemaker_pilot.config import AWS_REGION, CLIENT_MAX_ATTEMPTS

__all__ = [
    "_get_cloudwatch",
    "_get_s3",
    "_get_sagemaker",
    "_get_sagemaker_runtime",
    "_reset_clients",
]

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_sagemaker = None
_sagemaker_runtime = None
_s3 = None
_cloudwatch = None
_clients_lock = threading.Lock()


def _client_config() -> Config:
    return Config(retries={"max_attempts": CLIENT_MAX_ATTEMPTS, "mode": "standard"})


def _get_sagemaker(region: Optional[str] = None):
    """Get (or create) the SageMaker control-plane client singleton."""
    global _sagemaker
    if _sagemaker is None:
        with _clients_lock:
            if _sagemaker is None:
                _sagemaker = boto3.client(
                    "sagemaker",
                    region_name=region or AWS_REGION,
                    config=_client_config(),
                )
    return _sagemaker


def _get_sagemaker_runtime(region: Optional[str] = None):
    """Get (or create) the SageMaker runtime (invoke_endpoint) client singleton.

    botocore-level retries are disabled here; the invoker owns the retry loop.
    """
    global _sagemaker_runtime
    if _sagemaker_runtime is None:
        with _clients_lock:
            if _sagemaker_runtime is None:
                _sagemaker_runtime = boto3.client(
                    "sagemaker-runtime",
                    region_name=region or AWS_REGION,
                    config=Config(retries={"max_attempts": 1, "mode": "standard"}),
                )
    return _sagemaker_runtime


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton."""
    global _s3
    if _s3 is None:
        with _clients_lock:
            if _s3 is None:
                _s3 = boto3.client(
                    "s3",
                    region_name=region or AWS_REGION,
                    config=_client_config(),
                )
    return _s3


def _get_cloudwatch(region: Optional[str] = None):
    """Get (or create) the CloudWatch metrics client singleton."""
    global _cloudwatch
    if _cloudwatch is None:
        with _clients_lock:
            if _cloudwatch is None:
                _cloudwatch = boto3.client(
                    "cloudwatch",
                    region_name=region or AWS_REGION,
                    config=_client_config(),
                )
    return _cloudwatch


def _reset_clients() -> None:
    global _sagemaker, _sagemaker_runtime, _s3, _cloudwatch
    with _clients_lock:
        _sagemaker = None
        _sagemaker_runtime = None
        _s3 = None
        _cloudwatch = None
