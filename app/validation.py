from dataclasses import dataclass
from typing import Optional

from fastapi import File, Request, UploadFile

from .errors import UploadValidationError


@dataclass(frozen=True)
class ValidatedImage:
    data: bytes
    content_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)


def _format_limit(max_bytes: int) -> str:
    mb = max_bytes / (1024 * 1024)
    return f"{mb:g}MB"


async def read_image(upload: Optional[UploadFile], max_bytes: int) -> ValidatedImage:
    """校验上传文件：必须是 image/*，且不超过 max_bytes。

    最多读取 max_bytes + 1 字节，超限即拒绝，不会把超大文件整个读进内存。
    """
    if upload is None or not upload.filename:
        raise UploadValidationError("No image file provided")

    content_type = (upload.content_type or "").strip().lower()
    if not content_type.startswith("image/"):
        raise UploadValidationError("Only image files are allowed")

    data = await upload.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise UploadValidationError(f"File too large. Maximum size is {_format_limit(max_bytes)}.")
    if not data:
        raise UploadValidationError("Uploaded file is empty")

    return ValidatedImage(data=data, content_type=content_type, filename=upload.filename)


async def validated_image(request: Request, image: Optional[UploadFile] = File(None)) -> ValidatedImage:
    max_bytes = request.app.state.context.settings.MAX_UPLOAD_SIZE
    try:
        return await read_image(image, max_bytes)
    finally:
        if image is not None:
            await image.close()
