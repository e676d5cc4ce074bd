"""sagemaker_pilot.metrics — Inference metrics events and ready-made callbacks.

The invoker is a pure producer: it builds one :class:`InferenceMetrics` per
terminal outcome and hands it to a caller-supplied callback. Two callbacks are
provided here: a structured log line and a CloudWatch ``put_metric_data``
publisher.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from sagemaker_pilot.aws_clients import _get_cloudwatch

__all__ = [
    "InferenceMetrics",
    "MetricsCallback",
    "cloudwatch_metrics_callback",
    "structured_log_callback",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceMetrics:
    timestamp: int
    latency_ms: int
    success: bool
    endpoint_name: str
    error: Optional[str] = None
    attempts: int = 1
    inference_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}


MetricsCallback = Callable[[InferenceMetrics], None]


def structured_log_callback(event: InferenceMetrics) -> None:
    payload = {"component": "inference", "event": "invocation_outcome", **event.to_dict()}
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))


def cloudwatch_metrics_callback(namespace: str, cloudwatch_client: Any = None) -> MetricsCallback:
    """Build a callback publishing latency and invocation counts to CloudWatch.

    Publishing failures are logged, never raised.
    """

    def _publish(event: InferenceMetrics) -> None:
        client = cloudwatch_client or _get_cloudwatch()
        dimensions = [{"Name": "EndpointName", "Value": event.endpoint_name}]
        count_name = "Invocations" if event.success else "InvocationErrors"
        try:
            client.put_metric_data(
                Namespace=namespace,
                MetricData=[
                    {
                        "MetricName": "Latency",
                        "Dimensions": dimensions,
                        "Value": float(event.latency_ms),
                        "Unit": "Milliseconds",
                    },
                    {
                        "MetricName": count_name,
                        "Dimensions": dimensions,
                        "Value": 1.0,
                        "Unit": "Count",
                    },
                ],
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Failed to publish inference metrics for %s: %s", event.endpoint_name, exc)

    return _publish
