"""test_training.py — Unit tests for training-job staging and submission."""

from __future__ import annotations

import json
import tarfile
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

from sagemaker_pilot.errors import ConfigurationError
from sagemaker_pilot.frameworks import MLFramework
from sagemaker_pilot.training import DataFormat, TrainingJobSubmitter, file_extension

_CONFIG = {
    "region": "us-east-1",
    "role": "arn:aws:iam::123456789012:role/sagemaker-exec",
    "bucket": "ml-bucket",
    "service": "svc",
    "model": "model",
    "framework": MLFramework.PYTORCH,
}


class _SourceDirCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.source_dir = Path(self._tmp.name) / "src"
        (self.source_dir / "pkg").mkdir(parents=True)
        (self.source_dir / "train.py").write_text("print('train')\n", encoding="utf-8")
        (self.source_dir / "pkg" / "util.py").write_text("X = 1\n", encoding="utf-8")
        (self.source_dir / "__pycache__").mkdir()
        (self.source_dir / "__pycache__" / "train.cpython-311.pyc").write_bytes(b"\x00")
        self.sagemaker = MagicMock()
        self.s3 = MagicMock()

    def tearDown(self):
        self._tmp.cleanup()

    def _submitter(self, **overrides):
        config = dict(_CONFIG, **overrides)
        return TrainingJobSubmitter(config, self.source_dir, sagemaker_client=self.sagemaker, s3_client=self.s3)


class SubmitterConfigTests(_SourceDirCase):
    def test_missing_keys_rejected(self):
        with self.assertRaises(ConfigurationError):
            TrainingJobSubmitter({"region": "us-east-1"}, self.source_dir)

    def test_unknown_framework_rejected(self):
        with self.assertRaises(ConfigurationError):
            self._submitter(framework="caffe")

    def test_file_extensions(self):
        self.assertEqual(file_extension(DataFormat.CSV), "csv")
        self.assertEqual(file_extension(DataFormat.NUMPY), "npy")
        self.assertEqual(file_extension("application/x-unknown"), "dat")


class StagingTests(_SourceDirCase):
    def test_package_source_dir_skips_cache(self):
        archive_path = self._submitter().package_source_dir("job-1")
        try:
            with tarfile.open(archive_path, "r:gz") as archive:
                names = sorted(archive.getnames())
        finally:
            archive_path.unlink()
            archive_path.parent.rmdir()
        self.assertEqual(names, ["pkg/util.py", "train.py"])

    def test_stage_source_uploads_and_cleans_up(self):
        uploaded = {}

        def _upload(path, bucket, key):
            uploaded["path"] = Path(path)
            self.assertTrue(Path(path).exists())

        self.s3.upload_file.side_effect = _upload
        uri = self._submitter().stage_source("job-1")

        self.assertEqual(uri, "s3://ml-bucket/svc/model/job-1/code/source.tar.gz")
        self.s3.upload_file.assert_called_once()
        self.assertFalse(uploaded["path"].parent.exists())

    def test_stage_source_cleans_up_on_failure(self):
        uploaded = {}

        def _upload(path, bucket, key):
            uploaded["path"] = Path(path)
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")

        self.s3.upload_file.side_effect = _upload
        with self.assertRaises(ClientError):
            self._submitter().stage_source("job-1")
        self.assertFalse(uploaded["path"].parent.exists())

    def test_stage_input_passes_s3_uri_through(self):
        uri = self._submitter().stage_input({"data": "s3://other/train/", "format": DataFormat.CSV}, "job-1")
        self.assertEqual(uri, "s3://other/train/")
        self.s3.put_object.assert_not_called()
        self.s3.upload_file.assert_not_called()

    def test_stage_input_bytes(self):
        uri = self._submitter().stage_input(
            {"data": b"a,b\n1,2\n", "format": DataFormat.CSV, "channel_name": "train"},
            "job-1",
        )
        self.assertEqual(uri, "s3://ml-bucket/svc/model/job-1/data/train.csv")
        self.s3.put_object.assert_called_once_with(
            Bucket="ml-bucket",
            Key="svc/model/job-1/data/train.csv",
            Body=b"a,b\n1,2\n",
            ContentType="text/csv",
        )

    def test_stage_input_local_file(self):
        data_file = Path(self._tmp.name) / "records.json"
        data_file.write_text("[]", encoding="utf-8")
        uri = self._submitter().stage_input({"data": str(data_file), "format": "application/json"}, "job-1")
        self.assertEqual(uri, "s3://ml-bucket/svc/model/job-1/data/data.json")
        self.s3.upload_file.assert_called_once_with(
            str(data_file),
            "ml-bucket",
            "svc/model/job-1/data/data.json",
            ExtraArgs={"ContentType": "application/json"},
        )

    def test_stage_input_missing_file(self):
        with self.assertRaises(ConfigurationError):
            self._submitter().stage_input({"data": "/nonexistent/file.csv", "format": DataFormat.CSV}, "job-1")


class TrainTests(_SourceDirCase):
    @patch("sagemaker_pilot.training._unix_ms", return_value=1700000000000)
    def test_train_builds_request(self, _mock_ms):
        result = self._submitter().train(
            {"framework_version": "2.1"},
            {"instance_type": "ml.g5.xlarge", "instance_count": 1, "volume_size_gb": 50},
            {"learningRate": 0.001, "epochs": 5, "schema": {"target": "float"}},
            [
                {"data": b"1,2\n", "format": DataFormat.CSV},
                {"data": "s3://ml-bucket/validation/", "format": DataFormat.CSV},
            ],
            tags=[{"Key": "Team", "Value": "forecasting"}],
        )

        job_name = "svc-model-1700000000000"
        self.assertEqual(
            result,
            {
                "training_job_name": job_name,
                "model_output_path": f"s3://ml-bucket/svc/model/{job_name}/output/model.tar.gz",
                "hyperparameters": {"learningRate": 0.001, "epochs": 5, "schema": {"target": "float"}},
                "status": "InProgress",
                "framework": "pytorch",
            },
        )

        request = self.sagemaker.create_training_job.call_args.kwargs
        self.assertEqual(request["TrainingJobName"], job_name)
        self.assertEqual(
            request["StoppingCondition"],
            {"MaxRuntimeInSeconds": 86400, "MaxPendingTimeInSeconds": 3600},
        )
        self.assertEqual(
            request["AlgorithmSpecification"]["TrainingImage"],
            "763104351884.dkr.ecr.us-east-1.amazonaws.com/pytorch-training:2.1-gpu-py310",
        )
        self.assertEqual(
            [m["Name"] for m in request["AlgorithmSpecification"]["MetricDefinitions"]],
            ["loss", "accuracy", "learning_rate"],
        )
        self.assertEqual(request["Environment"]["SAGEMAKER_REGION"], "us-east-1")
        self.assertEqual(request["Environment"]["SAGEMAKER_CONTAINER_LOG_LEVEL"], "10")
        self.assertEqual(request["Environment"]["SAGEMAKER_FRAMEWORK_MODULE"], "sagemaker.pytorch.serving:main")
        self.assertEqual(request["OutputDataConfig"], {"S3OutputPath": "s3://ml-bucket/svc/model"})
        self.assertEqual(
            request["ResourceConfig"],
            {"InstanceCount": 1, "InstanceType": "ml.g5.xlarge", "VolumeSizeInGB": 50},
        )

        hyperparameters = request["HyperParameters"]
        self.assertEqual(hyperparameters["sagemaker_program"], "train.py")
        self.assertEqual(
            hyperparameters["sagemaker_submit_directory"],
            f"s3://ml-bucket/svc/model/{job_name}/code/source.tar.gz",
        )
        self.assertEqual(hyperparameters["s3-output-path"], f"s3://ml-bucket/svc/model/{job_name}/output")
        self.assertEqual(hyperparameters["lr"], "0.001")
        self.assertEqual(hyperparameters["epochs"], "5")
        self.assertEqual(json.loads(hyperparameters["data_schema"]), {"target": "float"})
        self.assertNotIn("schema", hyperparameters)

        channels = request["InputDataConfig"]
        self.assertEqual([c["ChannelName"] for c in channels], ["train", "channel_1"])
        self.assertEqual(channels[0]["DataSource"]["S3DataSource"]["S3Uri"], f"s3://ml-bucket/svc/model/{job_name}/data/train.csv")
        self.assertEqual(channels[1]["DataSource"]["S3DataSource"]["S3Uri"], "s3://ml-bucket/validation/")
        self.assertEqual(channels[0]["ContentType"], "text/csv")

        self.assertEqual(
            request["Tags"],
            [
                {"Key": "Framework", "Value": "pytorch"},
                {"Key": "Service", "Value": "svc"},
                {"Key": "Model", "Value": "model"},
                {"Key": "Team", "Value": "forecasting"},
            ],
        )
        self.sagemaker.describe_training_job.assert_not_called()

    def test_train_monitor_waits_for_terminal_status(self):
        self.sagemaker.describe_training_job.side_effect = [
            {"TrainingJobStatus": "InProgress"},
            {"TrainingJobStatus": "Completed"},
        ]
        with patch("sagemaker_pilot.jobs.time.sleep") as mock_sleep:
            result = self._submitter().train(
                None,
                {"instance_type": "ml.m5.xlarge"},
                {"epochs": 1},
                {"data": "s3://ml-bucket/train/", "format": DataFormat.JSON},
                metric_definitions=[{"Name": "mae", "Regex": "MAE: ([0-9.]+)"}],
                monitor=True,
                poll_interval_seconds=1,
            )
        self.assertEqual(result["status"], "Completed")
        self.assertEqual(mock_sleep.call_count, 1)
        request = self.sagemaker.create_training_job.call_args.kwargs
        self.assertEqual(request["AlgorithmSpecification"]["MetricDefinitions"], [{"Name": "mae", "Regex": "MAE: ([0-9.]+)"}])

    def test_custom_framework_requires_image(self):
        submitter = self._submitter(framework="custom")
        with self.assertRaises(ConfigurationError):
            submitter.train(None, {"instance_type": "ml.m5.xlarge"}, {}, {"data": "s3://b/k", "format": DataFormat.JSON})
        self.sagemaker.create_training_job.assert_not_called()

    def test_submission_error_propagates(self):
        self.sagemaker.create_training_job.side_effect = ClientError(
            {"Error": {"Code": "ResourceLimitExceeded", "Message": "quota"}},
            "CreateTrainingJob",
        )
        with self.assertRaises(ClientError):
            self._submitter().train(
                {"image_uri": "123.dkr.ecr.us-east-1.amazonaws.com/custom:1"},
                {"instance_type": "ml.m5.xlarge"},
                {},
                {"data": "s3://b/k", "format": DataFormat.JSON},
            )


if __name__ == "__main__":
    unittest.main()
