"""sagemaker_pilot.jobs — Fixed-interval polling until a remote resource reaches a terminal status.

Used for training jobs (Completed/Failed/Stopped) and for endpoints after a
create or update (InService/Failed/OutOfService). The interval never backs off.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Collection, Optional

from sagemaker_pilot.aws_clients import _get_sagemaker
from sagemaker_pilot.config import POLL_SECONDS
from sagemaker_pilot.errors import (
    JobWaitCancelledError,
    JobWaitTimeoutError,
    classify_error,
    is_retryable,
)

__all__ = [
    "ENDPOINT_TERMINAL_STATUSES",
    "TRAINING_JOB_TERMINAL_STATUSES",
    "describe_endpoint_status",
    "describe_training_job_status",
    "wait_for_endpoint",
    "wait_for_terminal_status",
    "wait_for_training_job",
]


TRAINING_JOB_TERMINAL_STATUSES = frozenset({"Completed", "Failed", "Stopped"})
ENDPOINT_TERMINAL_STATUSES = frozenset({"InService", "Failed", "OutOfService"})


def wait_for_terminal_status(
    resource_name: str,
    describe_status: Callable[[str], str],
    terminal_statuses: Collection[str],
    *,
    poll_interval_seconds: float = POLL_SECONDS,
    timeout_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    max_consecutive_errors: int = 0,
    sleep: Optional[Callable[[float], None]] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """Poll ``describe_status(resource_name)`` until it returns a terminal status.

    Args:
        poll_interval_seconds: Full sleep between polls, never scaled.
        timeout_seconds: Optional overall deadline; raises :class:`JobWaitTimeoutError`.
        cancel_event: Checked before every poll and waited on between polls;
            raises :class:`JobWaitCancelledError` once set.
        max_consecutive_errors: Transient describe failures tolerated in a row.
            ``0`` propagates the first failure.
        sleep: Interval sleep used when no ``cancel_event`` is given
            (``time.sleep`` by default).

    Returns:
        The terminal status string.
    """
    log = logger or logging.getLogger(__name__)
    pause = sleep or time.sleep
    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    consecutive_errors = 0
    polls = 0

    log.info("Monitoring %s until one of %s", resource_name, sorted(terminal_statuses))
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise JobWaitCancelledError(f"Wait for {resource_name} cancelled after {polls} poll(s)")

        polls += 1
        try:
            status = describe_status(resource_name)
        except Exception as exc:
            kind = classify_error(exc)
            consecutive_errors += 1
            if not is_retryable(kind) or consecutive_errors > max_consecutive_errors:
                raise
            log.warning(
                "Status check for %s failed (%d/%d consecutive, kind=%s): %s",
                resource_name,
                consecutive_errors,
                max_consecutive_errors,
                kind.value,
                exc,
            )
            status = None
        else:
            consecutive_errors = 0
            log.info("%s status: %s", resource_name, status)
            if status in terminal_statuses:
                return status

        if deadline is not None and time.monotonic() + poll_interval_seconds > deadline:
            raise JobWaitTimeoutError(
                f"Timed out waiting for terminal status on {resource_name} (last status: {status})"
            )

        log.info("%s is still in status: %s. Waiting %ss...", resource_name, status, poll_interval_seconds)
        if cancel_event is not None:
            if cancel_event.wait(poll_interval_seconds):
                raise JobWaitCancelledError(f"Wait for {resource_name} cancelled after {polls} poll(s)")
        else:
            pause(poll_interval_seconds)


def describe_training_job_status(job_name: str, sagemaker_client: Any = None) -> str:
    client = sagemaker_client or _get_sagemaker()
    response = client.describe_training_job(TrainingJobName=job_name)
    return str(response.get("TrainingJobStatus") or "")


def describe_endpoint_status(endpoint_name: str, sagemaker_client: Any = None) -> str:
    client = sagemaker_client or _get_sagemaker()
    response = client.describe_endpoint(EndpointName=endpoint_name)
    return str(response.get("EndpointStatus") or "")


def wait_for_training_job(
    job_name: str,
    sagemaker_client: Any = None,
    *,
    poll_interval_seconds: float = POLL_SECONDS,
    timeout_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    max_consecutive_errors: int = 0,
    sleep: Optional[Callable[[float], None]] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """Block until the training job is Completed, Failed or Stopped."""
    return wait_for_terminal_status(
        job_name,
        lambda name: describe_training_job_status(name, sagemaker_client),
        TRAINING_JOB_TERMINAL_STATUSES,
        poll_interval_seconds=poll_interval_seconds,
        timeout_seconds=timeout_seconds,
        cancel_event=cancel_event,
        max_consecutive_errors=max_consecutive_errors,
        sleep=sleep,
        logger=logger,
    )


def wait_for_endpoint(
    endpoint_name: str,
    sagemaker_client: Any = None,
    *,
    poll_interval_seconds: float = 30,
    timeout_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    max_consecutive_errors: int = 0,
    sleep: Optional[Callable[[float], None]] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    return wait_for_terminal_status(
        endpoint_name,
        lambda name: describe_endpoint_status(name, sagemaker_client),
        ENDPOINT_TERMINAL_STATUSES,
        poll_interval_seconds=poll_interval_seconds,
        timeout_seconds=timeout_seconds,
        cancel_event=cancel_event,
        max_consecutive_errors=max_consecutive_errors,
        sleep=sleep,
        logger=logger,
    )
