import os
from dotenv import load_dotenv

load_dotenv()

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
BUCKET_NAME = os.environ.get("BUCKET_NAME", "")
AWS_REGION = os.environ.get("AWS_REGION", "us-west-2")
BEDROCK_ROLE_ARN = os.environ.get("BEDROCK_ROLE_ARN", "")
API_BASE_URL = os.environ.get("API_BASE_URL", "http://localhost:8000").rstrip("/")

DEFAULT_MODEL_ID = os.environ.get("DEFAULT_MODEL_ID", "us.amazon.nova-lite-v1:0")
BATCH_MIN_IMAGES = int(os.environ.get("BATCH_MIN_IMAGES", "100"))
MANIFEST_MAX_IMAGES = int(os.environ.get("MANIFEST_MAX_IMAGES", "1000"))
MANIFEST_FAILURE_POLICY = os.environ.get("MANIFEST_FAILURE_POLICY", "skip").strip().lower()

MANIFEST_PREFIX = os.environ.get("MANIFEST_PREFIX", "batch-input")
OUTPUT_PREFIX = os.environ.get("OUTPUT_PREFIX", "batch-output")
PROCESSED_PREFIX = os.environ.get("PROCESSED_PREFIX", "processed")

JOB_RECORD_TTL_DAYS = int(os.environ.get("JOB_RECORD_TTL_DAYS", "7"))
GUEST_TTL_DAYS = int(os.environ.get("GUEST_TTL_DAYS", "60"))

BEDROCK_CONNECT_TIMEOUT_SEC = int(os.environ.get("BEDROCK_CONNECT_TIMEOUT_SEC", "5"))
BEDROCK_READ_TIMEOUT_SEC = int(os.environ.get("BEDROCK_READ_TIMEOUT_SEC", "20"))
BEDROCK_MAX_ATTEMPTS = int(os.environ.get("BEDROCK_MAX_ATTEMPTS", "3"))
