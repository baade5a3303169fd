# User value: This file estimates batch OCR time so users know when their receipts will be ready.
import math

# Bedrock batch jobs sit in a queue before they start; never promise less.
MIN_BATCH_DURATION_SEC = 15 * 60
SECONDS_PER_IMAGE = 6


# User value: gives the desktop client an honest wait time to show next to the job.
def estimate_batch_duration_sec(image_count: int | None) -> int:
    count = max(0, int(image_count or 0))
    return max(MIN_BATCH_DURATION_SEC, int(math.ceil(count * SECONDS_PER_IMAGE)))
