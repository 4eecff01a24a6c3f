from datetime import datetime, timezone

from fastapi import APIRouter

from ..schemas import HealthResponse


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    # 不依赖支付/存储，仅表示进程存活
    return HealthResponse(
        status="ok",
        message="x402 Image Uploader Service is running",
        timestamp=datetime.now(timezone.utc),
    )
