import json
import logging
import sys
from datetime import datetime, timezone

from utils.request_id import get_request_id


class JsonFormatter(logging.Formatter):
    """One JSON object per record so CloudWatch/Cloud Logging can index fields."""

    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = get_request_id()
        if request_id:
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_json_logging(*, service: str, level: int = logging.INFO) -> None:
    root = logging.getLogger()
    root.setLevel(level)

    # Lambda and uvicorn both pre-install handlers; replace their formatting.
    if not root.handlers:
        root.addHandler(logging.StreamHandler(sys.stdout))
    for handler in root.handlers:
        handler.setFormatter(JsonFormatter(service))
