import logging
from typing import List, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """启动配置缺失或非法。"""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = fields or []


class UploaderError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class UploadValidationError(UploaderError):
    """文件缺失、非图片或超出大小限制。"""

    status_code = status.HTTP_400_BAD_REQUEST
    public_message = "Invalid upload"


class StorageError(UploaderError):
    """对象存储写入失败。"""

    public_message = "Failed to upload image to storage"


class DatabaseError(UploaderError):
    """数据库读写失败。"""

    public_message = "Database error"


class PaymentRequiredError(UploaderError):
    """缺少或无效的支付凭证，payload 为 x402 的 402 响应体。"""

    status_code = status.HTTP_402_PAYMENT_REQUIRED
    public_message = "Payment required"

    def __init__(self, message: Optional[str] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.payload = payload or {"error": self.message}


class FacilitatorError(Exception):
    """facilitator 不可达或返回非 200。"""


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def uploader_exception_handler(request: Request, exc: UploaderError) -> JSONResponse:
    if isinstance(exc, PaymentRequiredError):
        return JSONResponse(status_code=exc.status_code, content=exc.payload)
    if exc.status_code >= 500:
        # 底层异常细节已在抛出处记录，这里只记路由
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return error_response(exc.status_code, "Endpoint not found")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # image 字段不是文件（例如普通文本字段）按缺少图片处理
    if any(tuple(err.get("loc", ()))[:2] == ("body", "image") for err in exc.errors()):
        return error_response(status.HTTP_400_BAD_REQUEST, "No image file provided")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(UploaderError, uploader_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
