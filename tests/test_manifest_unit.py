# User value: the manifest is what Bedrock actually reads, so every receipt the user queued must land in it exactly once.
import base64
import json
import unittest
from unittest.mock import patch

import config
from services.errors import ManifestBuildFailed
from services.manifest import build_manifest, build_manifest_line, manifest_key
from services.pending_images import image_format_for_key
from services.s3 import parse_s3_uri
from tests.aws_doubles import FakeS3, seed_pending_images
from tests.redis_double import InMemoryRedis

MODEL_ID = "us.amazon.nova-lite-v1:0"


class ManifestBuildUnitTests(unittest.TestCase):
    def setUp(self):
        patcher = patch.object(config, "BUCKET_NAME", "test-bucket")
        patcher.start()
        self.addCleanup(patcher.stop)
        self.r = InMemoryRedis()
        self.s3 = FakeS3()

    def _lines(self, manifest_uri):
        _, key = parse_s3_uri(manifest_uri)
        raw = self.s3.uploads[key]
        self.assertTrue(raw.endswith(b"\n"))
        return raw.decode("utf-8").splitlines()

    # User value: one line per receipt, each a standalone JSON record tagged with its image.
    def test_manifest_has_one_valid_line_per_image(self):
        image_ids = seed_pending_images(self.r, self.s3, 120)

        out = build_manifest(self.r, intent_id="intent-a", image_ids=image_ids, model_id=MODEL_ID, s3_client=self.s3)

        self.assertEqual(out["image_count"], 120)
        self.assertEqual(out["skipped_image_ids"], [])
        lines = self._lines(out["manifest_uri"])
        self.assertEqual(len(lines), 120)
        records = [json.loads(line) for line in lines]
        custom = [rec["customData"] for rec in records]
        self.assertEqual(len(set(custom)), 120)
        self.assertEqual(custom, image_ids)
        for rec in records:
            self.assertEqual(rec["modelId"], MODEL_ID)
            self.assertEqual(rec["input"]["image"]["format"], "jpeg")
            self.assertIn("amount", rec["input"]["text"])

    # User value: image bytes survive the trip intact so OCR sees the real receipt.
    def test_image_bytes_are_unwrapped_base64(self):
        payload = bytes(range(256)) * 40
        line = build_manifest_line(image_id="img-1", model_id=MODEL_ID, image_bytes=payload, image_format="png")

        self.assertNotIn("\n", line)
        encoded = json.loads(line)["input"]["image"]["source"]["bytes"]
        self.assertNotIn("\n", encoded)
        self.assertEqual(base64.b64decode(encoded), payload)

    # User value: one unreadable receipt does not sink the other 104 under the default skip policy.
    def test_skip_policy_drops_only_the_unreadable_image(self):
        image_ids = seed_pending_images(self.r, self.s3, 105)
        self.s3.failing_keys.add(f"uploads/user-1/{image_ids[7]}.jpg")

        out = build_manifest(
            self.r,
            intent_id="intent-b",
            image_ids=image_ids,
            model_id=MODEL_ID,
            s3_client=self.s3,
            failure_policy="skip",
        )

        self.assertEqual(out["image_count"], 104)
        self.assertEqual(out["skipped_image_ids"], [image_ids[7]])
        lines = self._lines(out["manifest_uri"])
        self.assertEqual(len(lines), 104)
        self.assertNotIn(image_ids[7], [json.loads(line)["customData"] for line in lines])

    # User value: a receipt whose pending record vanished is skipped, not fatal.
    def test_missing_pending_record_is_skipped(self):
        image_ids = seed_pending_images(self.r, self.s3, 101)
        self.r.delete(f"pending_image:{image_ids[0]}")

        out = build_manifest(self.r, intent_id="intent-c", image_ids=image_ids, model_id=MODEL_ID, s3_client=self.s3)

        self.assertEqual(out["image_count"], 100)
        self.assertEqual(out["skipped_image_ids"], [image_ids[0]])

    # User value: operators who prefer all-or-nothing batches get a clear failure and no manifest.
    def test_abort_policy_fails_on_first_unreadable_image(self):
        image_ids = seed_pending_images(self.r, self.s3, 105)
        self.s3.failing_keys.add(f"uploads/user-1/{image_ids[3]}.jpg")

        with self.assertRaises(ManifestBuildFailed) as ctx:
            build_manifest(
                self.r,
                intent_id="intent-d",
                image_ids=image_ids,
                model_id=MODEL_ID,
                s3_client=self.s3,
                failure_policy="abort",
            )

        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(ctx.exception.details["image_id"], image_ids[3])
        self.assertEqual(self.s3.uploads, {})

    # User value: Bedrock rejects small batches, so we fail before paying for a submission.
    def test_below_minimum_after_skips_fails(self):
        image_ids = seed_pending_images(self.r, self.s3, 100)
        self.s3.failing_keys.add(f"uploads/user-1/{image_ids[0]}.jpg")

        with self.assertRaises(ManifestBuildFailed) as ctx:
            build_manifest(self.r, intent_id="intent-e", image_ids=image_ids, model_id=MODEL_ID, s3_client=self.s3)

        self.assertEqual(ctx.exception.details["image_count"], 99)
        self.assertEqual(self.s3.uploads, {})

    # User value: oversized requests are capped at the batch limit instead of failing outright.
    def test_max_images_caps_the_manifest(self):
        image_ids = seed_pending_images(self.r, self.s3, 12)

        out = build_manifest(
            self.r,
            intent_id="intent-f",
            image_ids=image_ids,
            model_id=MODEL_ID,
            s3_client=self.s3,
            min_images=5,
            max_images=10,
        )

        self.assertEqual(out["image_count"], 10)
        self.assertEqual(out["image_ids"], image_ids[:10])

    def test_manifest_key_shape(self):
        self.assertEqual(manifest_key("intent-x", 1700000000000), "batch-input/manifest-1700000000000-intent-x.jsonl")

    def test_image_format_for_key(self):
        self.assertEqual(image_format_for_key("uploads/a.JPG"), "jpeg")
        self.assertEqual(image_format_for_key("uploads/a.png"), "png")
        self.assertEqual(image_format_for_key("uploads/a.webp"), "webp")
        self.assertEqual(image_format_for_key("uploads/noext"), "jpeg")


if __name__ == "__main__":
    unittest.main()
