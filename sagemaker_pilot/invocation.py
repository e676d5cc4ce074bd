"""sagemaker_pilot.invocation — Retrying, timing-out, monitored endpoint invocation.

:class:`InferenceInvoker` wraps ``sagemaker-runtime.invoke_endpoint`` with:

- a per-attempt timeout (the call runs on a worker thread and the attempt
  fails with :class:`InvocationTimeoutError` when the timer wins),
- bounded exponential backoff, ``backoff_multiplier ** attempt`` seconds
  before retry ``attempt`` (no jitter), ``max_attempts`` retries after the
  initial call; every remote failure (service error, SDK error, timeout)
  is retried,
- optional response validation (never retried),
- one metrics event per terminal outcome,
- a windowed, bounded-concurrency batch mode.
"""

from __future__ import annotations

import json
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Sequence

from sagemaker_pilot.aws_clients import _get_sagemaker_runtime
from sagemaker_pilot.config import (
    DEFAULT_ACCEPT,
    DEFAULT_CONTENT_TYPE,
    build_instance_config,
    merge_call_config,
)
from sagemaker_pilot.errors import (
    BatchDisabledError,
    ConfigurationError,
    InvocationTimeoutError,
    ResponseValidationError,
    classify_error,
    is_remote_failure,
)
from sagemaker_pilot.metrics import InferenceMetrics
from sagemaker_pilot.serialization import (
    _decode_body,
    _encode_body,
    _inference_id,
    _payload_size,
    _unix_ms,
)

__all__ = ["InferenceInvoker"]


# Call option name -> invoke_endpoint parameter, sent only when set.
_OPTIONAL_REQUEST_FIELDS = {
    "target_model": "TargetModel",
    "target_variant": "TargetVariant",
    "target_container_hostname": "TargetContainerHostname",
    "inference_component_name": "InferenceComponentName",
    "session_id": "SessionId",
}


def _identity(value: Any) -> Any:
    return value


def _render_custom_attributes(attributes: Dict[str, Any]) -> str:
    return ",".join(f"{key}={value}" for key, value in attributes.items())


def _explanations_expression(flag: Any) -> Optional[str]:
    if flag is None or flag is False:
        return None
    if flag is True:
        return "`true`"
    return str(flag)


class InferenceInvoker:
    """Invoke SageMaker real-time endpoints with retry, timeout and metrics.

    Args:
        runtime_client: ``sagemaker-runtime`` client; the shared singleton when omitted.
        config: Instance defaults (``retry``, ``validation``, ``monitoring``,
            ``batch``, ``default_content_type``, ``default_accept``,
            ``default_custom_attributes``). Missing fields fall back to
            :data:`sagemaker_pilot.config.DEFAULT_INVOKER_CONFIG`.
        logger: Logger for attempt-level messages.
        sleep: Backoff sleep function, injectable for tests.
    """

    def __init__(
        self,
        runtime_client: Any = None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = runtime_client
        self.config = build_instance_config(config)
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _get_sagemaker_runtime()
        return self._client

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    def _run_with_timeout(self, operation: Callable[[], Any], timeout_ms: float) -> Any:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sagemaker-invoke")
        try:
            future = executor.submit(operation)
            try:
                return future.result(timeout=float(timeout_ms) / 1000.0)
            except FutureTimeoutError:
                # The worker cannot be interrupted; its eventual result is dropped.
                future.cancel()
                raise InvocationTimeoutError(f"Timeout after {timeout_ms}ms") from None
        finally:
            executor.shutdown(wait=False)

    def _validate_response(self, response: Any, validation: Dict[str, Any]) -> None:
        if not validation.get("enabled"):
            return

        validator = validation.get("custom_validator")
        if validator is not None:
            if not validator(response):
                raise ResponseValidationError("Custom validation failed for response")
            return

        data = response.get("data") if isinstance(response, dict) else response
        if response is None or data is None or (isinstance(data, list) and not data):
            raise ResponseValidationError("Invalid response received from endpoint")

    def _record_metrics(self, event: InferenceMetrics, monitoring: Dict[str, Any]) -> None:
        if not monitoring.get("enabled"):
            return
        callback = monitoring.get("metrics_callback")
        if callback is not None:
            callback(event)

    def _execute_with_retry(
        self,
        operation: Callable[[], Any],
        endpoint_name: str,
        effective: Dict[str, Dict[str, Any]],
        inference_id: Optional[str] = None,
    ) -> Any:
        retry = effective["retry"]
        max_attempts = int(retry["max_attempts"])
        attempt = 0

        while True:
            start_ms = _unix_ms()
            started = time.monotonic()
            self.logger.info(
                "Starting operation on endpoint: %s, attempt: %d/%d",
                endpoint_name,
                attempt + 1,
                max_attempts + 1,
            )
            try:
                result = self._run_with_timeout(operation, retry["timeout_ms"])
                self._validate_response(result, effective["validation"])
            except Exception as exc:
                duration_ms = int((time.monotonic() - started) * 1000)
                kind = classify_error(exc)
                if is_remote_failure(exc) and attempt < max_attempts:
                    self.logger.warning(
                        "Operation failed on endpoint: %s, attempt: %d/%d, duration: %dms, kind: %s, error: %s",
                        endpoint_name,
                        attempt + 1,
                        max_attempts + 1,
                        duration_ms,
                        kind.value,
                        exc,
                    )
                    backoff_seconds = float(retry["backoff_multiplier"]) ** attempt
                    self.logger.info("Retrying in %.3fs...", backoff_seconds)
                    self._sleep(backoff_seconds)
                    attempt += 1
                    continue

                self.logger.error(
                    "Giving up on endpoint: %s, attempts: %d, final duration: %dms, kind: %s, error: %s",
                    endpoint_name,
                    attempt + 1,
                    duration_ms,
                    kind.value,
                    exc,
                )
                self._record_metrics(
                    InferenceMetrics(
                        timestamp=start_ms,
                        latency_ms=duration_ms,
                        success=False,
                        endpoint_name=endpoint_name,
                        error=str(exc),
                        attempts=attempt + 1,
                        inference_id=inference_id,
                    ),
                    effective["monitoring"],
                )
                raise

            duration_ms = int((time.monotonic() - started) * 1000)
            self.logger.info("Operation successful on endpoint: %s, duration: %dms", endpoint_name, duration_ms)
            self._record_metrics(
                InferenceMetrics(
                    timestamp=start_ms,
                    latency_ms=duration_ms,
                    success=True,
                    endpoint_name=endpoint_name,
                    attempts=attempt + 1,
                    inference_id=inference_id,
                ),
                effective["monitoring"],
            )
            return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def invoke_endpoint(
        self,
        endpoint_name: str,
        payload: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Invoke ``endpoint_name`` once (with retries) and return the assembled response.

        The response is ``{"data", "inference_id", "target_model",
        "target_variant"}`` plus ``"explanation"`` when explanations were
        requested. ``data`` is the decoded JSON body after ``transform_output``.
        """
        if not isinstance(endpoint_name, str) or not endpoint_name.strip():
            raise ConfigurationError("endpoint_name must be a non-empty string")

        options = options or {}
        effective = merge_call_config(self.config, options)

        content_type = options.get("content_type") or self.config.get("default_content_type") or DEFAULT_CONTENT_TYPE
        accept = options.get("accept") or self.config.get("default_accept") or DEFAULT_ACCEPT
        custom_attributes = options.get("custom_attributes") or self.config.get("default_custom_attributes") or {}
        transform_input = options.get("transform_input") or _identity
        transform_output = options.get("transform_output") or _identity
        inference_id = options.get("inference_id") or _inference_id()
        explanations = _explanations_expression(options.get("enable_explanations"))

        transformed_payload = transform_input(payload)
        body = _encode_body(transformed_payload)

        request: Dict[str, Any] = {
            "EndpointName": endpoint_name,
            "Body": body,
            "ContentType": content_type,
            "Accept": accept,
            "InferenceId": inference_id,
        }
        if custom_attributes:
            request["CustomAttributes"] = _render_custom_attributes(custom_attributes)
        if explanations:
            request["EnableExplanations"] = explanations
        for option_name, param_name in _OPTIONAL_REQUEST_FIELDS.items():
            if options.get(option_name) is not None:
                request[param_name] = options[option_name]

        self.logger.info(
            "Invoking endpoint: %s, payload size: %d bytes, inference ID: %s, target model: %s, "
            "target variant: %s, session ID: %s, content type: %s",
            endpoint_name,
            len(body),
            inference_id,
            options.get("target_model"),
            options.get("target_variant"),
            options.get("session_id"),
            content_type,
        )

        def _operation() -> Dict[str, Any]:
            result = self.client.invoke_endpoint(**request)
            parsed = _decode_body(result["Body"])
            response: Dict[str, Any] = {
                "data": transform_output(parsed),
                "inference_id": inference_id,
                "target_model": options.get("target_model"),
                "target_variant": options.get("target_variant"),
            }
            if explanations:
                response["explanation"] = parsed.get("explanation") if isinstance(parsed, dict) else None
            return response

        try:
            response = self._execute_with_retry(_operation, endpoint_name, effective, inference_id)
        except Exception as exc:
            context = {
                "inference_id": inference_id,
                "target_model": options.get("target_model"),
                "target_variant": options.get("target_variant"),
                "session_id": options.get("session_id"),
                "payload_bytes": len(body),
                "content_type": content_type,
                "accept": accept,
                "retry": effective["retry"],
            }
            self.logger.error(
                "Inference failed for endpoint %s: %s %s",
                endpoint_name,
                exc,
                json.dumps(context, sort_keys=True, default=str),
            )
            raise

        self.logger.debug(
            "Processed response from endpoint: %s, response size: %d bytes",
            endpoint_name,
            _payload_size(response.get("data")),
        )
        return response

    def _invoke_window(
        self,
        endpoint_name: str,
        window: Sequence[Any],
        options: Optional[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        with ThreadPoolExecutor(max_workers=len(window), thread_name_prefix="sagemaker-batch") as pool:
            futures = [pool.submit(self.invoke_endpoint, endpoint_name, item, options) for item in window]
            try:
                for future in as_completed(futures):
                    future.result()
            except Exception:
                for future in futures:
                    future.cancel()
                raise
            return [future.result() for future in futures]

    def batch_invoke_endpoint(
        self,
        endpoint_name: str,
        payloads: Sequence[Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Invoke ``endpoint_name`` for every payload, window by window.

        A window holds ``max_batch_size * concurrency`` payloads issued
        concurrently; the next window starts only after the whole window has
        settled. The first failure aborts the batch and propagates; results
        already computed are discarded. Results keep input order.
        """
        if not isinstance(payloads, (list, tuple)):
            raise ConfigurationError("Payloads must be a list")

        total = len(payloads)
        if total == 0:
            self.logger.warning("Empty payload list provided for endpoint: %s", endpoint_name)
            return []

        batch = self.config["batch"]
        if not batch.get("enabled"):
            raise BatchDisabledError("Batch processing is not enabled")

        # Resolve the shared client once, before worker threads need it.
        self._client = self.client

        batch_size = max(1, int(batch.get("max_batch_size") or 1))
        concurrency = max(1, int(batch.get("concurrency") or 1))
        window_size = batch_size * concurrency
        total_windows = math.ceil(total / window_size)
        results: List[Dict[str, Any]] = []
        started = time.monotonic()

        self.logger.info(
            "Starting batch operation on endpoint: %s, total items: %d, batch size: %d, concurrency: %d",
            endpoint_name,
            total,
            batch_size,
            concurrency,
        )

        try:
            for number, offset in enumerate(range(0, total, window_size), start=1):
                window = list(payloads[offset:offset + window_size])
                window_started = time.monotonic()
                self.logger.info(
                    "Processing batch %d/%d, items: %d-%d of %d",
                    number,
                    total_windows,
                    offset + 1,
                    offset + len(window),
                    total,
                )
                results.extend(self._invoke_window(endpoint_name, window, options))
                window_ms = (time.monotonic() - window_started) * 1000
                self.logger.info(
                    "Completed batch %d/%d, duration: %dms, average time per item: %.1fms",
                    number,
                    total_windows,
                    window_ms,
                    window_ms / len(window),
                )
        except Exception as exc:
            self.logger.error(
                "Batch operation failed for endpoint: %s, duration: %dms, processed: %d/%d items, error: %s",
                endpoint_name,
                (time.monotonic() - started) * 1000,
                len(results),
                total,
                exc,
            )
            raise

        total_ms = (time.monotonic() - started) * 1000
        self.logger.info(
            "Batch operation completed for endpoint: %s, total duration: %dms, average time per item: %.1fms",
            endpoint_name,
            total_ms,
            total_ms / total,
        )
        return results
