# User value: retries and double-clicks must never start a second paid batch job for the same intent.
import threading
import time
import unittest
from unittest.mock import patch

from botocore.exceptions import EndpointConnectionError, ReadTimeoutError

import config
from schemas.requests import BatchSubmitRequest
from services.batch_eta import estimate_batch_duration_sec
from services.batch_jobs import check_intent, find_job_by_job_id, record_job
from services.batch_orchestrator import submit_batch
from services.bedrock import client_request_token, job_id_from_arn, submit_batch_job
from services.errors import (
    BatchSubmissionFailed,
    IdempotencyStoreUnavailable,
    JobRecordWriteFailed,
    ManifestBuildFailed,
)
from tests.aws_doubles import FakeBedrock, FakeS3, client_error, seed_pending_images
from tests.redis_double import InMemoryRedis


def _request(intent_id, image_ids, user_id="user-1"):
    return BatchSubmitRequest.model_validate(
        {"intentId": intent_id, "pendingImageIds": image_ids, "userId": user_id}
    )


class _ConfiguredTestCase(unittest.TestCase):
    def setUp(self):
        for name, value in (
            ("BUCKET_NAME", "test-bucket"),
            ("BEDROCK_ROLE_ARN", "arn:aws:iam::123456789012:role/batch"),
            ("API_BASE_URL", "https://api.example.com"),
        ):
            patcher = patch.object(config, name, value)
            patcher.start()
            self.addCleanup(patcher.stop)
        self.r = InMemoryRedis()
        self.s3 = FakeS3()
        self.image_ids = seed_pending_images(self.r, self.s3, 100)


class BatchSubmitUnitTests(_ConfiguredTestCase):
    # User value: a fresh intent starts exactly one job and records it as SUBMITTED.
    def test_happy_path_submits_and_records(self):
        bedrock = FakeBedrock()

        out = submit_batch(_request("intent-1", self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)

        self.assertEqual(out["jobId"], "job0001")
        self.assertFalse(out["cached"])
        self.assertEqual(out["status"], "SUBMITTED")
        self.assertEqual(out["imageCount"], 100)
        self.assertEqual(out["statusUrl"], "https://api.example.com/batch/jobs/job0001")
        self.assertGreaterEqual(out["estimatedDuration"], 900)

        record = self.r.hgetall("batch_job:intent-1")
        self.assertEqual(record["job_id"], "job0001")
        self.assertEqual(record["status"], "SUBMITTED")
        self.assertEqual(record["user_id"], "user-1")
        self.assertEqual(record["pending_image_count"], "100")
        self.assertTrue(record["manifest_uri"].startswith("s3://test-bucket/batch-input/manifest-"))
        self.assertEqual(record["output_uri"], "s3://test-bucket/batch-output/")

        expected_ttl = int(time.time()) + 7 * 24 * 3600
        self.assertAlmostEqual(int(record["ttl"]), expected_ttl, delta=60)
        self.assertEqual(self.r.expiry_of("batch_job:intent-1"), int(record["ttl"]))
        self.assertEqual(self.r.get("batch_job_by_job_id:job0001"), "intent-1")

        call = bedrock.created[0]
        self.assertEqual(call["clientRequestToken"], client_request_token("intent-1"))
        self.assertEqual(call["inputDataConfig"]["s3InputDataConfig"]["s3Uri"], record["manifest_uri"])
        self.assertEqual(call["outputDataConfig"]["s3OutputDataConfig"]["s3Uri"], "s3://test-bucket/batch-output/")

    # User value: repeating a request returns the original job without touching Bedrock again.
    def test_sequential_duplicate_reuses_job(self):
        bedrock = FakeBedrock()
        first = submit_batch(_request("intent-2", self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)
        second = submit_batch(_request("intent-2", self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)

        self.assertEqual(first["jobId"], second["jobId"])
        self.assertTrue(second["cached"])
        self.assertEqual(second["imageCount"], 100)
        self.assertEqual(len(bedrock.created), 1)
        self.assertEqual(len(self.s3.uploads), 1)
        self.assertEqual(self.r.keys_with_prefix("batch_job:"), ["batch_job:intent-2"])

    # User value: two different intents always get two jobs, whatever characters the client chose.
    def test_distinct_intents_are_never_merged(self):
        bedrock = FakeBedrock()
        pairs = [("order/42", "order42"), ("注文-一", "売上-二")]

        for first_intent, second_intent in pairs:
            first = submit_batch(_request(first_intent, self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)
            second = submit_batch(_request(second_intent, self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)

            self.assertFalse(first["cached"])
            self.assertFalse(second["cached"])
            self.assertNotEqual(first["jobId"], second["jobId"])
            self.assertEqual(find_job_by_job_id(self.r, first["jobId"])["intent_id"], first_intent)
            self.assertEqual(find_job_by_job_id(self.r, second["jobId"])["intent_id"], second_intent)

        self.assertEqual(len(bedrock.created), 4)
        self.assertEqual(len(self.r.keys_with_prefix("batch_job:")), 4)
        self.assertTrue(check_intent(self.r, "注文-一")["cached"])

    # User value: the job reports the receipts it will actually process, not the ones it had to skip.
    def test_skipped_image_is_not_counted(self):
        bedrock = FakeBedrock()
        image_ids = self.image_ids + seed_pending_images(self.r, self.s3, 5, prefix="more")
        self.s3.failing_keys.add(f"uploads/user-1/{image_ids[3]}.jpg")

        with patch.object(config, "MANIFEST_FAILURE_POLICY", "skip"):
            out = submit_batch(_request("intent-105", image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)

        self.assertEqual(len(image_ids), 105)
        self.assertEqual(out["imageCount"], 104)
        self.assertEqual(self.r.hgetall("batch_job:intent-105")["pending_image_count"], "104")
        manifest = self.s3.uploads[next(iter(self.s3.uploads))].decode("utf-8").splitlines()
        self.assertEqual(len(manifest), 104)

    def _race(self, bedrock):
        results, errors = [], []

        def worker():
            try:
                results.append(
                    submit_batch(_request("intent-race", self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)
                )
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        self.assertEqual(errors, [])
        return results

    # User value: two concurrent submissions still leave one record and agree on one jobId.
    def test_concurrent_duplicates_converge_on_one_record(self):
        bedrock = FakeBedrock(barrier=threading.Barrier(2))

        results = self._race(bedrock)

        self.assertEqual(len(results), 2)
        self.assertEqual(results[0]["jobId"], results[1]["jobId"])
        self.assertEqual(sorted(r["cached"] for r in results), [False, True])
        self.assertEqual(self.r.keys_with_prefix("batch_job:"), ["batch_job:intent-race"])
        winner = self.r.hgetall("batch_job:intent-race")["job_id"]
        self.assertEqual(results[0]["jobId"], winner)

        self.assertEqual(len(bedrock.created), 2)
        self.assertEqual(len(bedrock.stopped), 1)
        self.assertNotEqual(job_id_from_arn(bedrock.stopped[0]), winner)

    # User value: with orphan stopping switched off the losing job is left alone, but the answer is unchanged.
    def test_orphan_stop_can_be_disabled(self):
        bedrock = FakeBedrock(barrier=threading.Barrier(2))

        with patch("services.batch_orchestrator.is_orphan_job_stop_enabled", return_value=False):
            results = self._race(bedrock)

        self.assertEqual(results[0]["jobId"], results[1]["jobId"])
        self.assertEqual(bedrock.stopped, [])

    # User value: if Bedrock refuses, no record exists so the client can safely retry with the same intent.
    def test_submission_failure_writes_no_record(self):
        bedrock = FakeBedrock(error=client_error("ValidationException", "CreateModelInvocationJob"))

        with self.assertRaises(BatchSubmissionFailed) as ctx:
            submit_batch(_request("intent-3", self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)

        self.assertEqual(ctx.exception.status_code, 502)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.r.keys_with_prefix("batch_job"), [])
        self.assertEqual(check_intent(self.r, "intent-3"), {"cached": False})

    # User value: an unreachable idempotency store stops the request before any job is started.
    def test_store_unavailable_blocks_submission(self):
        bedrock = FakeBedrock()
        self.r.fail_commands.add("hgetall")

        with self.assertRaises(IdempotencyStoreUnavailable) as ctx:
            submit_batch(_request("intent-4", self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(bedrock.created, [])
        self.assertEqual(self.s3.uploads, {})

    # User value: a manifest that cannot reach the minimum never reaches Bedrock.
    def test_manifest_failure_stops_before_submit(self):
        bedrock = FakeBedrock()
        self.s3.failing_keys.add(f"uploads/user-1/{self.image_ids[0]}.jpg")

        with self.assertRaises(ManifestBuildFailed):
            submit_batch(_request("intent-5", self.image_ids), r=self.r, s3_client=self.s3, bedrock_client=bedrock)

        self.assertEqual(bedrock.created, [])

    def test_record_write_failure_is_reported(self):
        self.r.fail_commands.add("hsetnx")

        with self.assertRaises(JobRecordWriteFailed) as ctx:
            record_job(
                self.r,
                intent_id="intent-6",
                job_id="job-x",
                user_id="user-1",
                pending_image_count=100,
                model_id="m",
                manifest_uri="s3://b/m.jsonl",
                output_uri="s3://b/out/",
            )
        self.assertTrue(ctx.exception.retryable)


class RecordJobUnitTests(_ConfiguredTestCase):
    # User value: the first writer's jobId is the one every later caller sees.
    def test_conditional_write_keeps_first_job_id(self):
        kwargs = dict(
            intent_id="intent-7",
            user_id="user-1",
            pending_image_count=100,
            model_id="m",
            manifest_uri="s3://b/m.jsonl",
            output_uri="s3://b/out/",
        )
        won_a, rec_a = record_job(self.r, job_id="job-a", **kwargs)
        won_b, rec_b = record_job(self.r, job_id="job-b", **kwargs)

        self.assertTrue(won_a)
        self.assertFalse(won_b)
        self.assertEqual(rec_b["job_id"], "job-a")
        self.assertIsNone(self.r.get("batch_job_by_job_id:job-b"))
        self.assertEqual(find_job_by_job_id(self.r, "job-a")["intent_id"], "intent-7")
        self.assertIsNone(find_job_by_job_id(self.r, "job-b"))


class BedrockSubmitUnitTests(_ConfiguredTestCase):
    def _submit(self, bedrock):
        return submit_batch_job(
            manifest_uri="s3://test-bucket/batch-input/m.jsonl",
            model_id="us.amazon.nova-lite-v1:0",
            output_uri="s3://test-bucket/batch-output/",
            intent_id="intent-8",
            client=bedrock,
        )

    def test_job_id_comes_from_arn(self):
        out = self._submit(FakeBedrock())
        self.assertEqual(out["job_id"], "job0001")
        self.assertTrue(out["job_arn"].endswith("/job0001"))
        self.assertEqual(out["status"], "SUBMITTED")

    # User value: quota pressure is reported as 429 so the client backs off instead of failing hard.
    def test_throttling_maps_to_429(self):
        bedrock = FakeBedrock(error=client_error("ThrottlingException", "CreateModelInvocationJob"))
        with self.assertRaises(BatchSubmissionFailed) as ctx:
            self._submit(bedrock)
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.error_code, "BATCH_SUBMISSION_THROTTLED")

    def test_quota_exceeded_maps_to_429(self):
        bedrock = FakeBedrock(error=client_error("ServiceQuotaExceededException", "CreateModelInvocationJob"))
        with self.assertRaises(BatchSubmissionFailed) as ctx:
            self._submit(bedrock)
        self.assertTrue(ctx.exception.throttled)

    # User value: a hung Bedrock call surfaces as a retryable failure, not a stuck request.
    def test_timeout_maps_to_submission_failed(self):
        bedrock = FakeBedrock(error=ReadTimeoutError(endpoint_url="https://bedrock.us-west-2.amazonaws.com"))
        with self.assertRaises(BatchSubmissionFailed) as ctx:
            self._submit(bedrock)
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIn("Timed out", ctx.exception.message)

    def test_connection_error_maps_to_submission_failed(self):
        bedrock = FakeBedrock(error=EndpointConnectionError(endpoint_url="https://bedrock.us-west-2.amazonaws.com"))
        with self.assertRaises(BatchSubmissionFailed) as ctx:
            self._submit(bedrock)
        self.assertEqual(ctx.exception.message, "Batch inference service unavailable")

    def test_client_request_token_is_stable_per_intent(self):
        self.assertEqual(client_request_token("a"), client_request_token("a"))
        self.assertNotEqual(client_request_token("a"), client_request_token("b"))
        self.assertLessEqual(len(client_request_token("a")), 64)


class BatchEtaUnitTests(unittest.TestCase):
    def test_floor_and_growth(self):
        self.assertEqual(estimate_batch_duration_sec(0), 900)
        self.assertEqual(estimate_batch_duration_sec(100), 900)
        self.assertEqual(estimate_batch_duration_sec(1000), 6000)


if __name__ == "__main__":
    unittest.main()
