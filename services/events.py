# services/events.py
import base64
import json
from urllib.parse import unquote_plus

from pydantic import ValidationError

from schemas.requests import BatchSubmitRequest
from services.bedrock import job_id_from_arn
from services.errors import RequestValidationFailed
from services.s3 import s3_uri


def _errors_detail(exc: ValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc") or []), "msg": str(err.get("msg") or ""), "type": str(err.get("type") or "")}
        for err in exc.errors()
    ]


def unwrap_body(event) -> dict:
    """Return the payload of a direct invocation or an API-gateway event.

    API gateway delivers ``body`` as a JSON string (optionally base64);
    direct invocations pass the object itself.
    """
    if not isinstance(event, dict):
        raise RequestValidationFailed("Event must be a JSON object")
    if "body" not in event:
        return event

    body = event.get("body")
    if body is None:
        raise RequestValidationFailed("Request body is empty")
    if isinstance(body, dict):
        return body
    if isinstance(body, (str, bytes)):
        try:
            if event.get("isBase64Encoded"):
                body = base64.b64decode(body)
            payload = json.loads(body or "{}")
        except (ValueError, TypeError) as exc:
            raise RequestValidationFailed("Request body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise RequestValidationFailed("Request body must be a JSON object")
        return payload
    raise RequestValidationFailed("Request body must be a JSON object")


def parse_submission_event(event) -> BatchSubmitRequest:
    payload = unwrap_body(event)
    try:
        return BatchSubmitRequest.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationFailed("Invalid batch submission", details={"errors": _errors_detail(exc)}) from exc


def parse_status_change_event(event) -> dict:
    """Normalise a job status change into ``{job_id, status, message}``.

    Accepts the EventBridge "Batch Inference Job State Change" shape
    (``detail.batchJobArn`` / ``detail.status``) and plain or body-wrapped
    ``{"jobId", "status"}`` objects.
    """
    if isinstance(event, dict) and isinstance(event.get("detail"), dict):
        payload = event["detail"]
    else:
        payload = unwrap_body(event)

    job_ref = (
        payload.get("jobId")
        or payload.get("batchJobArn")
        or payload.get("jobArn")
        or payload.get("job_id")
    )
    status = payload.get("status")
    if not job_ref or not status:
        raise RequestValidationFailed("Status change requires jobId (or batchJobArn) and status")

    return {
        "job_id": job_id_from_arn(str(job_ref)),
        "status": str(status),
        "message": str(payload.get("message") or payload.get("errorMessage") or ""),
    }


def parse_result_event(event) -> list[str]:
    """Output object URIs from an S3 notification or ``{"outputUri": ...}``."""
    if isinstance(event, dict) and isinstance(event.get("Records"), list):
        uris = []
        for record in event["Records"]:
            s3 = (record or {}).get("s3") or {}
            bucket = (s3.get("bucket") or {}).get("name")
            key = (s3.get("object") or {}).get("key")
            if bucket and key:
                uris.append(s3_uri(bucket, unquote_plus(key)))
        if not uris:
            raise RequestValidationFailed("S3 event carries no object records")
        return uris

    payload = unwrap_body(event)
    uri = payload.get("outputUri") or payload.get("output_uri")
    if not uri:
        raise RequestValidationFailed("outputUri is required")
    return [str(uri)]
