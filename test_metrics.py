"""test_metrics.py — Unit tests for metrics callbacks, body helpers and client singletons."""

from __future__ import annotations

import io
import json
import re
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

from sagemaker_pilot import aws_clients
from sagemaker_pilot.metrics import (
    InferenceMetrics,
    cloudwatch_metrics_callback,
    structured_log_callback,
)
from sagemaker_pilot.serialization import (
    _decode_body,
    _encode_body,
    _inference_id,
    _now_z,
    _resource_id,
)


class InferenceMetricsTests(unittest.TestCase):
    def test_to_dict_drops_missing_error(self):
        event = InferenceMetrics(timestamp=1, latency_ms=12, success=True, endpoint_name="ep")
        self.assertEqual(
            event.to_dict(),
            {"timestamp": 1, "latency_ms": 12, "success": True, "endpoint_name": "ep", "attempts": 1},
        )

    def test_structured_log_callback_emits_json(self):
        event = InferenceMetrics(timestamp=1, latency_ms=5, success=False, endpoint_name="ep", error="boom")
        with self.assertLogs("sagemaker_pilot.metrics", level="INFO") as captured:
            structured_log_callback(event)
        line = captured.output[0]
        payload = json.loads(line.split("[OBSERVABILITY] ", 1)[1])
        self.assertEqual(payload["error"], "boom")
        self.assertEqual(payload["event"], "invocation_outcome")


class CloudWatchCallbackTests(unittest.TestCase):
    def test_success_publishes_latency_and_invocations(self):
        client = MagicMock()
        callback = cloudwatch_metrics_callback("SageMakerPilot", cloudwatch_client=client)
        callback(InferenceMetrics(timestamp=1, latency_ms=40, success=True, endpoint_name="ep"))

        kwargs = client.put_metric_data.call_args.kwargs
        self.assertEqual(kwargs["Namespace"], "SageMakerPilot")
        names = [datum["MetricName"] for datum in kwargs["MetricData"]]
        self.assertEqual(names, ["Latency", "Invocations"])
        self.assertEqual(kwargs["MetricData"][0]["Value"], 40.0)

    def test_failure_counts_errors(self):
        client = MagicMock()
        callback = cloudwatch_metrics_callback("NS", cloudwatch_client=client)
        callback(InferenceMetrics(timestamp=1, latency_ms=40, success=False, endpoint_name="ep", error="x"))
        names = [datum["MetricName"] for datum in client.put_metric_data.call_args.kwargs["MetricData"]]
        self.assertEqual(names, ["Latency", "InvocationErrors"])

    def test_publish_failure_is_logged_not_raised(self):
        client = MagicMock()
        client.put_metric_data.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}},
            "PutMetricData",
        )
        callback = cloudwatch_metrics_callback("NS", cloudwatch_client=client)
        with self.assertLogs("sagemaker_pilot.metrics", level="WARNING"):
            callback(InferenceMetrics(timestamp=1, latency_ms=1, success=True, endpoint_name="ep"))


class SerializationTests(unittest.TestCase):
    def test_now_z_format(self):
        self.assertRegex(_now_z(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

    def test_inference_id_shape(self):
        self.assertRegex(_inference_id(), r"^inf-\d+-[0-9a-z]{9}$")
        self.assertNotEqual(_inference_id(), _inference_id())

    def test_resource_id_shape(self):
        match = re.match(r"^(\d+)-(\d{4})$", _resource_id())
        self.assertIsNotNone(match)
        self.assertTrue(1000 <= int(match.group(2)) <= 9999)

    def test_decode_stream_bytes_and_str(self):
        self.assertEqual(_decode_body(io.BytesIO(b'{"a": 1}')), {"a": 1})
        self.assertEqual(_decode_body(b"[1, 2]"), [1, 2])
        self.assertEqual(_decode_body('"x"'), "x")

    def test_encode_body(self):
        self.assertEqual(json.loads(_encode_body({"inputs": [1]})), {"inputs": [1]})


class ClientSingletonTests(unittest.TestCase):
    def setUp(self):
        aws_clients._reset_clients()

    def tearDown(self):
        aws_clients._reset_clients()

    @patch("sagemaker_pilot.aws_clients.boto3")
    def test_sagemaker_client_cached(self, mock_boto3):
        first = aws_clients._get_sagemaker()
        second = aws_clients._get_sagemaker()
        self.assertIs(first, second)
        mock_boto3.client.assert_called_once()
        self.assertEqual(mock_boto3.client.call_args.args[0], "sagemaker")

    @patch("sagemaker_pilot.aws_clients.boto3")
    def test_runtime_client_disables_sdk_retries(self, mock_boto3):
        aws_clients._get_sagemaker_runtime("eu-west-1")
        kwargs = mock_boto3.client.call_args.kwargs
        self.assertEqual(kwargs["region_name"], "eu-west-1")
        self.assertEqual(mock_boto3.client.call_args.args[0], "sagemaker-runtime")

    @patch("sagemaker_pilot.aws_clients.boto3")
    def test_concurrent_first_use_creates_one_client(self, mock_boto3):
        def _slow_client(*args, **kwargs):
            time.sleep(0.01)
            return object()

        mock_boto3.client.side_effect = _slow_client
        barrier = threading.Barrier(12)
        results = []
        lock = threading.Lock()

        def _worker():
            barrier.wait()
            client = aws_clients._get_sagemaker_runtime()
            with lock:
                results.append(client)

        threads = [threading.Thread(target=_worker) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(mock_boto3.client.call_count, 1)
        self.assertEqual(len(results), 12)
        self.assertEqual(len({id(client) for client in results}), 1)


if __name__ == "__main__":
    unittest.main()
