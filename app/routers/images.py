import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, status

from ..dependencies import get_store
from ..schemas import ImageListResponse, ImageOut, UploadResponse
from ..storage import Failed, ImageStore, StoredUnrecorded
from ..validation import ValidatedImage, validated_image

logger = logging.getLogger(__name__)


router = APIRouter()


@router.post(
    "/upload",
    response_model=UploadResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
)
def upload_image(
    *,
    image: ValidatedImage = Depends(validated_image),
    x_user_address: Optional[str] = Header(None),
    store: ImageStore = Depends(get_store),
) -> UploadResponse:
    """受支付网关保护：存储文件并记录元数据。"""
    result = store.save_upload(image, user_address=x_user_address)

    if isinstance(result, Failed):
        raise result.error

    if isinstance(result, StoredUnrecorded):
        # 文件已上传成功，元数据失败也按成功返回，只是没有 id
        logger.warning("Image stored at %s but metadata was not saved: %s", result.path, result.error.message)
        return UploadResponse(
            message="Image uploaded successfully (metadata save failed)",
            url=result.url,
            path=result.path,
        )

    record = result.record
    logger.info("Image uploaded: id=%s path=%s size=%d", record.id, record.path, record.file_size)
    return UploadResponse(
        message="Image uploaded successfully",
        id=record.id,
        url=record.public_url,
        path=record.path,
        uploaded_at=record.uploaded_at,
    )


@router.get("/images", response_model=ImageListResponse)
def list_images(store: ImageStore = Depends(get_store)) -> ImageListResponse:
    return ImageListResponse(images=[ImageOut.model_validate(r) for r in store.list_records()])
