"""sagemaker_pilot.frameworks — Per-framework settings for training and serving.

Each supported framework is a member of :class:`MLFramework` mapped to one
:class:`FrameworkProfile` record: container image templates, the serving
module, the training content type, hyperparameter renames and the default
metric definitions scraped from training logs. Adding a framework means adding
one table row.

Image templates take ``region``, ``framework_version``, ``python_version``
and ``processor`` (``gpu``/``cpu``) as format fields.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from sagemaker_pilot.errors import ConfigurationError

__all__ = [
    "FrameworkProfile",
    "MLFramework",
    "SERVING_SUBMIT_DIRECTORY",
    "get_framework_profile",
    "inference_image_uri",
    "map_hyperparameters",
    "serving_environment",
    "training_image_uri",
]

SERVING_SUBMIT_DIRECTORY = "/opt/ml/model/code"

_DLC_REGISTRY = "763104351884.dkr.ecr.{region}.amazonaws.com"
_FIRST_PARTY_REGISTRY = "683313688378.dkr.ecr.{region}.amazonaws.com"


class MLFramework(str, enum.Enum):
    PYTORCH = "pytorch"
    TENSORFLOW = "tensorflow"
    SKLEARN = "sklearn"
    XGBOOST = "xgboost"
    HUGGINGFACE = "huggingface"
    CUSTOM = "custom"


@dataclass(frozen=True)
class FrameworkProfile:
    """Static settings for one framework."""

    framework: MLFramework
    training_image: Optional[str]
    inference_image: Optional[str]
    serving_module: Optional[str]
    content_type: str
    hyperparameter_mapping: Mapping[str, str]
    default_metrics: Tuple[Tuple[str, str], ...]
    default_framework_version: Optional[str] = None
    default_python_version: str = "py310"
    serving_env: Mapping[str, str] = field(default_factory=dict)

    def metric_definitions(self) -> List[Dict[str, str]]:
        return [{"Name": name, "Regex": regex} for name, regex in self.default_metrics]

    def training_environment(self) -> Dict[str, str]:
        if not self.serving_module:
            return {}
        return {"SAGEMAKER_FRAMEWORK_MODULE": self.serving_module}


_PROFILES: Dict[MLFramework, FrameworkProfile] = {
    MLFramework.PYTORCH: FrameworkProfile(
        framework=MLFramework.PYTORCH,
        training_image=_DLC_REGISTRY + "/pytorch-training:{framework_version}-{processor}-{python_version}",
        inference_image=_DLC_REGISTRY + "/pytorch-inference:{framework_version}-{processor}-{python_version}",
        serving_module="sagemaker.pytorch.serving:main",
        content_type="application/x-torch",
        hyperparameter_mapping={
            "learningRate": "lr",
            "learning_rate": "lr",
            "batchSize": "batch_size",
            "epochs": "epochs",
        },
        default_metrics=(
            ("loss", r"Loss: ([0-9\.]+)"),
            ("accuracy", r"Accuracy: ([0-9\.]+)"),
            ("learning_rate", r"Learning Rate: ([0-9\.]+)"),
        ),
        default_framework_version="2.1",
    ),
    MLFramework.TENSORFLOW: FrameworkProfile(
        framework=MLFramework.TENSORFLOW,
        training_image=_DLC_REGISTRY + "/tensorflow-training:{framework_version}-{processor}-{python_version}",
        inference_image=_DLC_REGISTRY + "/tensorflow-inference:{framework_version}-{processor}-{python_version}",
        serving_module="sagemaker.tensorflow.serving:main",
        content_type="application/x-tensorflow",
        hyperparameter_mapping={
            "learningRate": "learning_rate",
            "batchSize": "batch_size",
            "epochs": "epochs",
        },
        default_metrics=(
            ("loss", r"loss: ([0-9\.]+)"),
            ("accuracy", r"accuracy: ([0-9\.]+)"),
            ("val_loss", r"val_loss: ([0-9\.]+)"),
        ),
        default_framework_version="2.12",
    ),
    MLFramework.SKLEARN: FrameworkProfile(
        framework=MLFramework.SKLEARN,
        training_image=_FIRST_PARTY_REGISTRY + "/sagemaker-scikit-learn:{framework_version}",
        inference_image=_FIRST_PARTY_REGISTRY + "/sagemaker-scikit-learn-inference:{framework_version}",
        serving_module="sagemaker.sklearn.serving:main",
        content_type="text/csv",
        hyperparameter_mapping={
            "maxDepth": "max_depth",
            "nEstimators": "n_estimators",
        },
        default_metrics=(
            ("accuracy", r"accuracy: ([0-9\.]+)"),
            ("f1_score", r"f1: ([0-9\.]+)"),
        ),
        default_framework_version="1.0",
    ),
    MLFramework.XGBOOST: FrameworkProfile(
        framework=MLFramework.XGBOOST,
        training_image=_FIRST_PARTY_REGISTRY + "/sagemaker-xgboost:{framework_version}",
        inference_image=_FIRST_PARTY_REGISTRY + "/sagemaker-xgboost-inference:{framework_version}",
        serving_module="sagemaker.xgboost.serving:main",
        content_type="text/libsvm",
        hyperparameter_mapping={
            "learningRate": "eta",
            "learning_rate": "eta",
            "maxDepth": "max_depth",
            "nEstimators": "n_estimators",
        },
        default_metrics=(
            ("validation:rmse", r"validation-rmse:([0-9\.]+)"),
            ("train:rmse", r"train-rmse:([0-9\.]+)"),
        ),
        default_framework_version="1.5",
    ),
    MLFramework.HUGGINGFACE: FrameworkProfile(
        framework=MLFramework.HUGGINGFACE,
        training_image=(
            _DLC_REGISTRY + "/huggingface-pytorch-training:{framework_version}-{processor}-{python_version}"
        ),
        inference_image=(
            _DLC_REGISTRY + "/huggingface-pytorch-inference:{framework_version}-transformers-{python_version}"
        ),
        serving_module="sagemaker.huggingface.serving:main",
        content_type="application/json",
        hyperparameter_mapping={
            "learningRate": "learning_rate",
            "batchSize": "per_device_train_batch_size",
            "batch_size": "per_device_train_batch_size",
            "epochs": "num_train_epochs",
        },
        default_metrics=(
            ("loss", r"loss: ([0-9\.]+)"),
            ("eval_loss", r"eval_loss: ([0-9\.]+)"),
        ),
        default_framework_version="4.28",
        serving_env={"SAGEMAKER_HF_TASK": "text-classification"},
    ),
    # Custom containers bring their own image and serving stack.
    MLFramework.CUSTOM: FrameworkProfile(
        framework=MLFramework.CUSTOM,
        training_image=None,
        inference_image=None,
        serving_module=None,
        content_type="application/json",
        hyperparameter_mapping={},
        default_metrics=(
            ("mse", r"MSE: ([0-9\.]+)"),
            ("mase", r"MASE: ([0-9\.]+)"),
        ),
    ),
}


def get_framework_profile(framework: Union[MLFramework, str]) -> FrameworkProfile:
    try:
        return _PROFILES[MLFramework(framework)]
    except ValueError:
        supported = ", ".join(f.value for f in MLFramework)
        raise ConfigurationError(f"Unsupported framework: {framework!r} (expected one of: {supported})")


def _format_image(
    template: Optional[str],
    region: str,
    framework_version: Optional[str],
    python_version: str,
    use_gpu: bool,
) -> Optional[str]:
    if template is None:
        return None
    return template.format(
        region=region,
        framework_version=framework_version,
        python_version=python_version,
        processor="gpu" if use_gpu else "cpu",
    )


def training_image_uri(
    framework: Union[MLFramework, str],
    region: str,
    framework_version: Optional[str] = None,
    python_version: Optional[str] = None,
    use_gpu: bool = True,
) -> Optional[str]:
    """Default training image for ``framework``; ``None`` for custom containers."""
    profile = get_framework_profile(framework)
    return _format_image(
        profile.training_image,
        region,
        framework_version or profile.default_framework_version,
        python_version or profile.default_python_version,
        use_gpu,
    )


def inference_image_uri(
    framework: Union[MLFramework, str],
    region: str,
    framework_version: Optional[str] = None,
    python_version: Optional[str] = None,
    use_gpu: bool = False,
) -> Optional[str]:
    """Default serving image for ``framework``; ``None`` for custom containers."""
    profile = get_framework_profile(framework)
    return _format_image(
        profile.inference_image,
        region,
        framework_version or profile.default_framework_version,
        python_version or profile.default_python_version,
        use_gpu,
    )


def map_hyperparameters(
    framework: Union[MLFramework, str],
    hyperparameters: Optional[Mapping[str, Any]],
) -> Dict[str, str]:
    """Rename known keys for the framework's training script and stringify every value.

    ``None`` values are dropped. Nested values (dicts, lists) should be
    serialized by the caller; they are stringified with ``str`` here.
    """
    mapping = get_framework_profile(framework).hyperparameter_mapping
    mapped: Dict[str, str] = {}
    for key, value in (hyperparameters or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        mapped[mapping.get(key, key)] = str(value)
    return mapped


def serving_environment(
    framework: Union[MLFramework, str],
    entry_point: str,
    framework_version: Optional[str] = None,
    python_version: Optional[str] = None,
    extra: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Container environment for a model served from ``entry_point``."""
    profile = get_framework_profile(framework)
    env: Dict[str, str] = {
        "SAGEMAKER_PROGRAM": entry_point,
        "SAGEMAKER_SUBMIT_DIRECTORY": SERVING_SUBMIT_DIRECTORY,
    }
    if profile.serving_module:
        env["SAGEMAKER_FRAMEWORK_VERSION"] = str(framework_version or profile.default_framework_version)
        env["SAGEMAKER_FRAMEWORK_MODULE"] = profile.serving_module
        env["SAGEMAKER_PYTHON_VERSION"] = str(python_version or profile.default_python_version)
    env.update(profile.serving_env)
    env.update(extra or {})
    return env
