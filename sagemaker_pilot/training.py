"""sagemaker_pilot.training — Training-job submission.

Packages a local source directory, stages it and the input channels in S3,
assembles the ``create_training_job`` request from the framework table and
optionally blocks until the job reaches a terminal status.

S3 layout under the configured bucket::

    {service}/{model}/{job}/code/source.tar.gz
    {service}/{model}/{job}/data/{channel}.{ext}
    {service}/{model}/{job}/output/model.tar.gz     (written by the platform)
"""

from __future__ import annotations

import enum
import json
import logging
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from sagemaker_pilot.aws_clients import _get_s3, _get_sagemaker
from sagemaker_pilot.config import POLL_SECONDS
from sagemaker_pilot.errors import ConfigurationError
from sagemaker_pilot.frameworks import (
    get_framework_profile,
    map_hyperparameters,
    training_image_uri,
)
from sagemaker_pilot.jobs import wait_for_training_job
from sagemaker_pilot.serialization import _unix_ms

__all__ = [
    "DataFormat",
    "TrainingJobSubmitter",
    "file_extension",
]

DEFAULT_MAX_RUNTIME_SECONDS = 86400
DEFAULT_MAX_PENDING_SECONDS = 3600
DEFAULT_ENTRY_POINT = "train.py"

_REQUIRED_CONFIG_KEYS = ("region", "role", "bucket", "service", "model", "framework")
_SKIP_DIRS = {".git", "__pycache__", ".pytest_cache", ".mypy_cache", ".venv", "node_modules"}
_SKIP_FILES = {".DS_Store"}


class DataFormat(str, enum.Enum):
    JSON = "application/json"
    CSV = "text/csv"
    PARQUET = "application/x-parquet"
    LIBSVM = "application/x-libsvm"
    RECORDIO = "application/x-recordio-protobuf"
    PROTOBUF = "application/x-protobuf"
    NUMPY = "application/x-npy"


_EXTENSIONS = {
    DataFormat.JSON.value: "json",
    DataFormat.CSV.value: "csv",
    DataFormat.PARQUET.value: "parquet",
    DataFormat.LIBSVM.value: "libsvm",
    DataFormat.RECORDIO.value: "recordio",
    DataFormat.PROTOBUF.value: "pb",
    DataFormat.NUMPY.value: "npy",
}


def _format_value(data_format: Union[DataFormat, str, None]) -> str:
    if isinstance(data_format, DataFormat):
        return data_format.value
    return str(data_format or DataFormat.JSON.value)


def file_extension(data_format: Union[DataFormat, str, None]) -> str:
    return _EXTENSIONS.get(_format_value(data_format), "dat")


def _iter_source_files(source_dir: Path) -> Iterable[Path]:
    for path in sorted(source_dir.rglob("*")):
        if path.is_dir():
            continue
        rel_parts = path.relative_to(source_dir).parts
        if any(part in _SKIP_DIRS for part in rel_parts):
            continue
        if path.name in _SKIP_FILES:
            continue
        yield path


class TrainingJobSubmitter:
    """Submit training jobs for one service/model pair.

    ``config`` holds ``region``, ``role``, ``bucket``, ``service``, ``model``
    and ``framework`` (an :class:`MLFramework` or its value), plus an optional
    ``use_gpu`` flag (default ``True``) used to pick the default image.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        source_dir: Union[str, Path],
        sagemaker_client: Any = None,
        s3_client: Any = None,
        logger: Optional[logging.Logger] = None,
    ):
        missing = [key for key in _REQUIRED_CONFIG_KEYS if not config.get(key)]
        if missing:
            raise ConfigurationError(f"Training config missing required keys: {', '.join(missing)}")
        self.config = dict(config)
        self.profile = get_framework_profile(config["framework"])
        self.framework = self.profile.framework
        self.source_dir = Path(source_dir)
        self.logger = logger or logging.getLogger(__name__)
        self._sagemaker = sagemaker_client
        self._s3 = s3_client
        self.logger.info(
            "Initialized training submitter for %s/%s (framework=%s, source=%s)",
            self.config["service"],
            self.config["model"],
            self.framework.value,
            self.source_dir,
        )

    @property
    def sagemaker(self) -> Any:
        if self._sagemaker is None:
            self._sagemaker = _get_sagemaker()
        return self._sagemaker

    @property
    def s3(self) -> Any:
        if self._s3 is None:
            self._s3 = _get_s3()
        return self._s3

    @property
    def bucket(self) -> str:
        return self.config["bucket"]

    def _job_prefix(self, job_name: str) -> str:
        return f"{self.config['service']}/{self.config['model']}/{job_name}"

    @property
    def output_path(self) -> str:
        return f"s3://{self.bucket}/{self.config['service']}/{self.config['model']}"

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def package_source_dir(self, job_name: str) -> Path:
        """Write the source directory to ``source.tar.gz`` in a fresh temp directory."""
        if not self.source_dir.is_dir():
            raise ConfigurationError(f"Source directory does not exist: {self.source_dir}")
        temp_dir = Path(tempfile.mkdtemp(prefix=f"sagemaker-pilot-{job_name}-"))
        archive_path = temp_dir / "source.tar.gz"
        with tarfile.open(archive_path, "w:gz") as archive:
            for file_path in _iter_source_files(self.source_dir):
                archive.add(file_path, arcname=str(file_path.relative_to(self.source_dir)))
        self.logger.info("Archived %s to %s", self.source_dir, archive_path)
        return archive_path

    def stage_source(self, job_name: str) -> str:
        archive_path = self.package_source_dir(job_name)
        key = f"{self._job_prefix(job_name)}/code/source.tar.gz"
        try:
            self.s3.upload_file(str(archive_path), self.bucket, key)
        except Exception:
            self.logger.error("Failed to upload source archive for %s", job_name, exc_info=True)
            raise
        finally:
            shutil.rmtree(archive_path.parent, ignore_errors=True)
        uri = f"s3://{self.bucket}/{key}"
        self.logger.info("Source code uploaded to %s", uri)
        return uri

    def stage_input(self, input_config: Dict[str, Any], job_name: str) -> str:
        """Return an S3 URI for one input channel, uploading local data when needed."""
        data = input_config.get("data")
        if isinstance(data, str) and data.startswith("s3://"):
            return data
        if data is None:
            raise ConfigurationError("Input channel has no data")

        content_type = _format_value(input_config.get("format"))
        channel = input_config.get("channel_name") or "data"
        key = f"{self._job_prefix(job_name)}/data/{channel}.{file_extension(content_type)}"

        if isinstance(data, (bytes, bytearray)):
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=bytes(data), ContentType=content_type)
        else:
            path = Path(data)
            if not path.is_file():
                raise ConfigurationError(f"Input data file does not exist: {path}")
            self.s3.upload_file(str(path), self.bucket, key, ExtraArgs={"ContentType": content_type})

        uri = f"s3://{self.bucket}/{key}"
        self.logger.info("Input data for channel %s uploaded to %s", channel, uri)
        return uri

    def _build_channels(self, input_data: Sequence[Dict[str, Any]], job_name: str) -> List[Dict[str, Any]]:
        channels: List[Dict[str, Any]] = []
        for index, item in enumerate(input_data):
            channel_name = item.get("channel_name") or ("train" if index == 0 else f"channel_{index}")
            s3_uri = self.stage_input({**item, "channel_name": channel_name}, job_name)
            channels.append(
                {
                    "ChannelName": channel_name,
                    "DataSource": {
                        "S3DataSource": {
                            "S3DataType": item.get("s3_data_type") or "S3Prefix",
                            "S3Uri": s3_uri,
                            "S3DataDistributionType": item.get("distribution_type") or "FullyReplicated",
                        }
                    },
                    "ContentType": _format_value(item.get("format")),
                }
            )
        return channels

    # ------------------------------------------------------------------
    # Request assembly
    # ------------------------------------------------------------------

    def resolve_framework_config(self, framework_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Fill image URI and versions from the framework table; caller values win."""
        framework_config = framework_config or {}
        resolved = {
            "framework_version": framework_config.get("framework_version") or self.profile.default_framework_version,
            "python_version": framework_config.get("python_version") or self.profile.default_python_version,
        }
        resolved["image_uri"] = framework_config.get("image_uri") or training_image_uri(
            self.framework,
            self.config["region"],
            resolved["framework_version"],
            resolved["python_version"],
            use_gpu=self.config.get("use_gpu", True),
        )
        if not resolved["image_uri"]:
            raise ConfigurationError(f"Framework {self.framework.value} requires an explicit image_uri")
        return resolved

    def build_training_job_request(
        self,
        job_name: str,
        source_uri: str,
        framework_config: Dict[str, Any],
        resource_config: Dict[str, Any],
        hyperparameters: Optional[Dict[str, Any]],
        metric_definitions: List[Dict[str, str]],
        channels: List[Dict[str, Any]],
        tags: List[Dict[str, str]],
    ) -> Dict[str, Any]:
        hyperparameters = dict(hyperparameters or {})
        schema = hyperparameters.pop("schema", None)
        mapped = map_hyperparameters(self.framework, hyperparameters)

        job_hyperparameters: Dict[str, str] = {
            "sagemaker_program": resource_config.get("entry_point") or DEFAULT_ENTRY_POINT,
            "sagemaker_submit_directory": source_uri,
            "s3-output-path": f"s3://{self.bucket}/{self._job_prefix(job_name)}/output",
        }
        job_hyperparameters.update(mapped)
        if schema is not None:
            job_hyperparameters["data_schema"] = json.dumps(schema)

        environment: Dict[str, str] = dict(self.profile.training_environment())
        environment["SAGEMAKER_REGION"] = self.config["region"]
        environment["SAGEMAKER_CONTAINER_LOG_LEVEL"] = "10"
        environment.update(resource_config.get("environment") or {})

        return {
            "TrainingJobName": job_name,
            "StoppingCondition": {
                "MaxRuntimeInSeconds": resource_config.get("max_runtime_seconds") or DEFAULT_MAX_RUNTIME_SECONDS,
                "MaxPendingTimeInSeconds": resource_config.get("max_pending_seconds") or DEFAULT_MAX_PENDING_SECONDS,
            },
            "AlgorithmSpecification": {
                "TrainingImage": framework_config["image_uri"],
                "TrainingInputMode": "File",
                "EnableSageMakerMetricsTimeSeries": True,
                "MetricDefinitions": metric_definitions,
            },
            "Environment": environment,
            "RoleArn": self.config["role"],
            "InputDataConfig": channels,
            "OutputDataConfig": {"S3OutputPath": self.output_path},
            "ResourceConfig": {
                "InstanceCount": int(resource_config.get("instance_count") or 1),
                "InstanceType": resource_config["instance_type"],
                "VolumeSizeInGB": int(resource_config.get("volume_size_gb") or 30),
            },
            "HyperParameters": job_hyperparameters,
            "Tags": tags,
        }

    def _default_tags(self) -> List[Dict[str, str]]:
        return [
            {"Key": "Framework", "Value": self.framework.value},
            {"Key": "Service", "Value": self.config["service"]},
            {"Key": "Model", "Value": self.config["model"]},
        ]

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def train(
        self,
        framework_config: Optional[Dict[str, Any]],
        resource_config: Dict[str, Any],
        hyperparameters: Optional[Dict[str, Any]],
        input_data: Union[Dict[str, Any], Sequence[Dict[str, Any]]],
        metric_definitions: Optional[List[Dict[str, str]]] = None,
        monitor: bool = False,
        tags: Optional[List[Dict[str, str]]] = None,
        poll_interval_seconds: float = POLL_SECONDS,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Stage sources and data, start the training job and optionally wait for it.

        Returns ``training_job_name``, ``model_output_path``,
        ``hyperparameters``, ``status`` and ``framework``. ``status`` is
        ``InProgress`` unless ``monitor`` is set.
        """
        if not resource_config.get("instance_type"):
            raise ConfigurationError("resource_config.instance_type is required")
        inputs = [input_data] if isinstance(input_data, dict) else list(input_data)
        if not inputs:
            raise ConfigurationError("At least one input channel is required")

        resolved_framework = self.resolve_framework_config(framework_config)
        job_name = f"{self.config['service']}-{self.config['model']}-{_unix_ms()}"
        try:
            source_uri = self.stage_source(job_name)
            channels = self._build_channels(inputs, job_name)
            request = self.build_training_job_request(
                job_name,
                source_uri,
                resolved_framework,
                resource_config,
                hyperparameters,
                metric_definitions or self.profile.metric_definitions(),
                channels,
                self._default_tags() + list(tags or []),
            )
            self.sagemaker.create_training_job(**request)
            self.logger.info("Training job started: %s", job_name)

            status = "InProgress"
            if monitor:
                status = wait_for_training_job(
                    job_name,
                    self.sagemaker,
                    poll_interval_seconds=poll_interval_seconds,
                    timeout_seconds=timeout_seconds,
                    logger=self.logger,
                )
                self.logger.info("Training job %s finished with status %s", job_name, status)
        except Exception:
            self.logger.error("Training job %s failed to submit or complete", job_name, exc_info=True)
            raise

        return {
            "training_job_name": job_name,
            "model_output_path": f"{self.output_path}/{job_name}/output/model.tar.gz",
            "hyperparameters": hyperparameters or {},
            "status": status,
            "framework": self.framework.value,
        }
