"""
Lambda entrypoints.

submit_handler          direct invoke or API gateway -> submit a batch job
status_change_handler   EventBridge job state change -> update Job Record
result_handler          S3 object-created on batch-output/ -> reconcile
"""

import json
import logging
import os

from utils.json_logging import configure_json_logging

configure_json_logging(
    service="yorutsuke-batch-api",
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
)

from services.batch_jobs import apply_status_change
from services.batch_orchestrator import submit_batch
from services.errors import BatchPipelineError, RequestValidationFailed
from services.events import parse_result_event, parse_status_change_event, parse_submission_event
from services.job_status import to_status_response
from services.reconciler import is_result_object, reconcile_output
from services.redis_client import get_redis
from services.s3 import parse_s3_uri
from utils.request_id import request_id_from_headers, set_request_id

logger = logging.getLogger("api.lambda")


def _response(status_code: int, body: dict) -> dict:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, ensure_ascii=False),
    }


def _error_response(exc: BatchPipelineError, request_id: str) -> dict:
    body = exc.to_detail()
    body["request_id"] = request_id
    return _response(exc.status_code, body)


def _init_request(event) -> str:
    headers = event.get("headers") if isinstance(event, dict) else None
    request_id = request_id_from_headers(headers)
    set_request_id(request_id)
    return request_id


def _invoke(name: str, event, fn, success_status: int) -> dict:
    request_id = _init_request(event)
    try:
        return _response(success_status, fn())
    except BatchPipelineError as exc:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "%s_failed error_code=%s retryable=%s error_message=%s",
            name,
            exc.error_code,
            exc.retryable,
            exc.message,
        )
        return _error_response(exc, request_id)
    except Exception as exc:
        logger.exception("%s_failed_unhandled error=%s: %s", name, exc.__class__.__name__, exc)
        return _response(
            500,
            {
                "error_code": "INTERNAL_SERVER_ERROR",
                "error_message": "Internal server error",
                "request_id": request_id,
            },
        )
    finally:
        set_request_id(None)


def submit_handler(event, context=None):
    def run():
        return submit_batch(parse_submission_event(event))

    return _invoke("batch_submit", event, run, 202)


def status_change_handler(event, context=None):
    def run():
        change = parse_status_change_event(event)
        record = apply_status_change(
            get_redis(),
            job_id=change["job_id"],
            status=change["status"],
            error_message=change["message"] or None,
            source="event",
        )
        return to_status_response(record)

    return _invoke("batch_status_change", event, run, 200)


def result_handler(event, context=None):
    def run():
        summaries = []
        for uri in parse_result_event(event):
            try:
                _, key = parse_s3_uri(uri)
            except ValueError as exc:
                raise RequestValidationFailed(str(exc)) from exc
            if not is_result_object(key):
                logger.info("result_object_ignored output_uri=%s", uri)
                continue
            summaries.append(reconcile_output(uri))
        return {"results": summaries}

    return _invoke("batch_result", event, run, 200)
