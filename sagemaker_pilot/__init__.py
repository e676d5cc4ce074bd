"""sagemaker_pilot — Resilient inference, training and deployment helpers for SageMaker.

Provides:
    - Endpoint invocation with timeout, retry, validation and metrics
      (``invocation``), single and batched
    - Fixed-interval polling of training jobs and endpoints (``jobs``)
    - Training-job submission with source and data staging (``training``)
    - Serverless endpoint create-or-update (``deployment``)
    - Per-framework image/serving table (``frameworks``)
"""

__version__ = "1.0.0"
