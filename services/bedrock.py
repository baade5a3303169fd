"""
Bedrock batch inference client.

Starting a batch job is a short synchronous call; the OCR work itself runs
for minutes to hours out of process. The client timeouts below bound only the
start call.
"""

import hashlib
import logging
import time

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

import config
from schemas.job_contract import JOB_STATUS_SUBMITTED
from services.errors import BatchSubmissionFailed
from utils.metrics import incr, observe_ms
from utils.stage_logging import log_stage

logger = logging.getLogger("api.bedrock")

_THROTTLE_CODES = {
    "ThrottlingException",
    "ServiceQuotaExceededException",
    "TooManyRequestsException",
}

_client = None


def get_bedrock_client():
    global _client
    if _client is not None:
        return _client
    _client = boto3.client(
        "bedrock",
        region_name=config.AWS_REGION,
        config=Config(
            connect_timeout=config.BEDROCK_CONNECT_TIMEOUT_SEC,
            read_timeout=config.BEDROCK_READ_TIMEOUT_SEC,
            retries={"max_attempts": config.BEDROCK_MAX_ATTEMPTS, "mode": "standard"},
        ),
    )
    return _client


def job_id_from_arn(job_arn: str) -> str:
    return str(job_arn or "").rsplit("/", 1)[-1]


def client_request_token(intent_id: str) -> str:
    """Stable per intent, so Bedrock itself collapses retried start calls."""
    return hashlib.sha256(f"batch|{intent_id}".encode("utf-8")).hexdigest()[:64]


def job_name_for(intent_id: str, submitted_at_ms: int | None = None) -> str:
    ts = submitted_at_ms if submitted_at_ms is not None else int(time.time() * 1000)
    return f"yorutsuke-batch-{ts}-{client_request_token(intent_id)[:8]}"


def submit_batch_job(
    *,
    manifest_uri: str,
    model_id: str,
    output_uri: str,
    intent_id: str,
    client=None,
    role_arn: str | None = None,
) -> dict:
    client = client or get_bedrock_client()
    job_name = job_name_for(intent_id)

    log_stage(
        job_id=None,
        stage="BATCH_SUBMIT",
        event="STARTED",
        intent_id=intent_id,
        job_name=job_name,
        model_id=model_id,
        manifest_uri=manifest_uri,
    )
    started = time.perf_counter()
    try:
        response = client.create_model_invocation_job(
            jobName=job_name,
            roleArn=role_arn or config.BEDROCK_ROLE_ARN,
            clientRequestToken=client_request_token(intent_id),
            modelId=model_id,
            inputDataConfig={"s3InputDataConfig": {"s3Uri": manifest_uri, "s3InputFormat": "JSONL"}},
            outputDataConfig={"s3OutputDataConfig": {"s3Uri": output_uri}},
        )
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        throttled = code in _THROTTLE_CODES
        incr("api_batch_submit_failed_total", reason=code or "client_error")
        log_stage(
            job_id=None,
            stage="BATCH_SUBMIT",
            event="FAILED",
            intent_id=intent_id,
            error_code=code,
            error=str(exc),
        )
        raise BatchSubmissionFailed(
            f"Bedrock rejected the batch job: {code or 'ClientError'}",
            details={"aws_error_code": code},
            throttled=throttled,
        ) from exc
    except (ConnectTimeoutError, ReadTimeoutError) as exc:
        incr("api_batch_submit_failed_total", reason="timeout")
        log_stage(
            job_id=None,
            stage="BATCH_SUBMIT",
            event="FAILED",
            intent_id=intent_id,
            error=f"{exc.__class__.__name__}: {exc}",
        )
        raise BatchSubmissionFailed("Timed out starting the batch job") from exc
    except BotoCoreError as exc:
        incr("api_batch_submit_failed_total", reason="botocore")
        log_stage(
            job_id=None,
            stage="BATCH_SUBMIT",
            event="FAILED",
            intent_id=intent_id,
            error=f"{exc.__class__.__name__}: {exc}",
        )
        raise BatchSubmissionFailed("Batch inference service unavailable") from exc
    finally:
        observe_ms("api_batch_submit_latency_ms", (time.perf_counter() - started) * 1000.0)

    job_arn = response["jobArn"]
    job_id = job_id_from_arn(job_arn)
    log_stage(
        job_id=job_id,
        stage="BATCH_SUBMIT",
        event="COMPLETED",
        intent_id=intent_id,
        job_arn=job_arn,
        model_id=model_id,
    )
    return {"job_id": job_id, "job_arn": job_arn, "status": JOB_STATUS_SUBMITTED}


def get_batch_job(job_identifier: str, *, client=None) -> dict:
    client = client or get_bedrock_client()
    response = client.get_model_invocation_job(jobIdentifier=job_identifier)
    return {
        "job_arn": response.get("jobArn") or job_identifier,
        "status": response.get("status") or "",
        "message": response.get("message") or "",
    }


def stop_batch_job(job_identifier: str, *, client=None) -> None:
    client = client or get_bedrock_client()
    client.stop_model_invocation_job(jobIdentifier=job_identifier)
