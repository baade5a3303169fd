from fastapi import APIRouter

from services.redis_client import get_redis
from utils.metrics import snapshot

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health():
    get_redis().ping()
    return {
        "status": "OK",
        "redis": "connected"
    }


@router.get("/metrics")
def metrics():
    return snapshot()
