"""sagemaker_pilot.deployment — Serverless endpoint deployment.

Every deploy registers a fresh model and endpoint config under a generated
resource id, then either points the existing endpoint at the new config or
creates the endpoint. Old models and configs are left in place.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sagemaker_pilot.aws_clients import _get_sagemaker
from sagemaker_pilot.errors import ConfigurationError, ErrorKind, classify_error
from sagemaker_pilot.frameworks import (
    get_framework_profile,
    inference_image_uri,
    serving_environment,
)
from sagemaker_pilot.jobs import wait_for_endpoint
from sagemaker_pilot.serialization import _resource_id

__all__ = ["ModelDeployer"]

_REQUIRED_CONFIG_KEYS = ("service", "model", "role", "bucket", "region", "framework")


class ModelDeployer:
    """Deploy models for one service/model pair to a named serverless endpoint."""

    def __init__(
        self,
        config: Dict[str, Any],
        sagemaker_client: Any = None,
        logger: Optional[logging.Logger] = None,
    ):
        missing = [key for key in _REQUIRED_CONFIG_KEYS if not config.get(key)]
        if missing:
            raise ConfigurationError(f"Deployment config missing required keys: {', '.join(missing)}")
        self.config = dict(config)
        self.profile = get_framework_profile(config["framework"])
        self.framework = self.profile.framework
        self.endpoint_name = config.get("endpoint_name") or f"{config['service']}-{config['model']}-endpoint"
        self.logger = logger or logging.getLogger(__name__)
        self._client = sagemaker_client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _get_sagemaker()
        return self._client

    def _model_data(self, model_spec: Dict[str, Any]) -> str:
        if model_spec.get("model_data"):
            return str(model_spec["model_data"])
        job_name = model_spec.get("training_job_name")
        if not job_name:
            raise ConfigurationError("model_spec needs either model_data or training_job_name")
        return (
            f"s3://{self.config['bucket']}/{self.config['service']}/{self.config['model']}"
            f"/{job_name}/output/model.tar.gz"
        )

    def _image_uri(self, model_spec: Dict[str, Any]) -> str:
        image = model_spec.get("image_uri") or inference_image_uri(
            self.framework,
            self.config["region"],
            model_spec.get("framework_version"),
            model_spec.get("python_version"),
            use_gpu=bool(self.config.get("use_gpu", False)),
        )
        if not image:
            raise ConfigurationError(f"Framework {self.framework.value} requires an explicit image_uri")
        return image

    def _create_ignoring_existing(self, operation: str, resource_name: str, **kwargs: Any) -> None:
        try:
            getattr(self.client, operation)(**kwargs)
        except Exception as exc:
            if classify_error(exc) != ErrorKind.ALREADY_EXISTS:
                raise
            self.logger.info("%s already exists; reusing it", resource_name)

    def endpoint_exists(self) -> bool:
        try:
            self.client.describe_endpoint(EndpointName=self.endpoint_name)
        except Exception as exc:
            if classify_error(exc) == ErrorKind.NOT_FOUND:
                return False
            raise
        return True

    def deploy(
        self,
        model_spec: Dict[str, Any],
        serverless_config: Dict[str, Any],
        wait: bool = False,
        timeout_seconds: Optional[float] = None,
        poll_interval_seconds: float = 30,
    ) -> Dict[str, Any]:
        """Register a new model revision and route the endpoint to it.

        ``model_spec`` keys: ``model_data`` or ``training_job_name``,
        ``entry_point``, optional ``framework_version``, ``python_version``,
        ``image_uri`` and ``role`` (defaults to the deployer's role).
        ``serverless_config`` keys: ``memory_size_in_mb``, ``max_concurrency``.

        Returns ``model_name``, ``endpoint_name`` and ``status``
        (``Created`` or ``Updated``), plus ``endpoint_status`` when ``wait``.
        """
        model_data = self._model_data(model_spec)
        image = self._image_uri(model_spec)
        for key in ("memory_size_in_mb", "max_concurrency"):
            if not serverless_config.get(key):
                raise ConfigurationError(f"serverless_config.{key} is required")

        resource_id = _resource_id()
        model_name = f"model-{resource_id}"
        config_name = f"config-{resource_id}"
        environment = serving_environment(
            self.framework,
            model_spec.get("entry_point") or "inference.py",
            model_spec.get("framework_version"),
            model_spec.get("python_version"),
            extra=self.config.get("environment"),
        )

        try:
            self.logger.info("Creating model %s from %s", model_name, model_data)
            self._create_ignoring_existing(
                "create_model",
                model_name,
                ModelName=model_name,
                ExecutionRoleArn=model_spec.get("role") or self.config["role"],
                PrimaryContainer={
                    "Image": image,
                    "ModelDataUrl": model_data,
                    "Environment": environment,
                },
            )

            self.logger.info("Creating endpoint config %s", config_name)
            self._create_ignoring_existing(
                "create_endpoint_config",
                config_name,
                EndpointConfigName=config_name,
                ProductionVariants=[
                    {
                        "VariantName": "AllTraffic",
                        "ModelName": model_name,
                        "ServerlessConfig": {
                            "MemorySizeInMB": int(serverless_config["memory_size_in_mb"]),
                            "MaxConcurrency": int(serverless_config["max_concurrency"]),
                        },
                    }
                ],
            )

            if self.endpoint_exists():
                self.logger.info("Updating existing endpoint %s", self.endpoint_name)
                self.client.update_endpoint(EndpointName=self.endpoint_name, EndpointConfigName=config_name)
                status = "Updated"
            else:
                self.logger.info("Creating new endpoint %s", self.endpoint_name)
                self.client.create_endpoint(EndpointName=self.endpoint_name, EndpointConfigName=config_name)
                status = "Created"

            result: Dict[str, Any] = {
                "model_name": model_name,
                "endpoint_name": self.endpoint_name,
                "status": status,
            }
            if wait:
                result["endpoint_status"] = wait_for_endpoint(
                    self.endpoint_name,
                    self.client,
                    poll_interval_seconds=poll_interval_seconds,
                    timeout_seconds=timeout_seconds,
                    logger=self.logger,
                )
        except Exception:
            self.logger.error("Deployment of %s to %s failed", model_name, self.endpoint_name, exc_info=True)
            raise

        self.logger.info("Deployment %s: %s -> %s", status.lower(), model_name, self.endpoint_name)
        return result
