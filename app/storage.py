import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Union

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import DatabaseError, StorageError
from .models import ImageRecord
from .oss import suggest_object_key
from .validation import ValidatedImage

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    def put(self, data: bytes, content_type: str, key: str) -> str:
        ...


@dataclass(frozen=True)
class Stored:
    record: ImageRecord


@dataclass(frozen=True)
class StoredUnrecorded:
    """文件已写入存储，但元数据入库失败；不回滚已上传的文件。"""

    url: str
    path: str
    error: DatabaseError


@dataclass(frozen=True)
class Failed:
    error: StorageError


UploadResult = Union[Stored, StoredUnrecorded, Failed]


class ImageStore:
    """对象存储 + images 表。"""

    def __init__(self, objects: ObjectStorage, session_factory: sessionmaker):
        self.objects = objects
        self.session_factory = session_factory

    def store(self, data: bytes, content_type: str, path: str) -> str:
        return self.objects.put(data, content_type, path)

    def record_metadata(self, record: ImageRecord) -> ImageRecord:
        with self.session_factory() as db:
            try:
                db.add(record)
                db.commit()
                db.refresh(record)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Database error saving %s: %s", record.path, e)
                raise DatabaseError("Failed to save image metadata") from e
        return record

    def list_records(self) -> List[ImageRecord]:
        stmt = select(ImageRecord).order_by(desc(ImageRecord.uploaded_at), desc(ImageRecord.id))
        with self.session_factory() as db:
            try:
                return list(db.scalars(stmt).all())
            except SQLAlchemyError as e:
                logger.error("Database error listing images: %s", e)
                raise DatabaseError("Failed to fetch images") from e

    def save_upload(self, image: ValidatedImage, user_address: Optional[str] = None) -> UploadResult:
        path = suggest_object_key(image.filename)
        try:
            public_url = self.store(image.data, image.content_type, path)
        except StorageError as e:
            return Failed(error=e)

        # public_url 只在存储写入成功后才落库
        record = ImageRecord(
            user_address=user_address or None,
            path=path,
            mime=image.content_type,
            public_url=public_url,
            file_size=image.size,
            original_name=image.filename,
        )
        try:
            return Stored(record=self.record_metadata(record))
        except DatabaseError as e:
            return StoredUnrecorded(url=public_url, path=path, error=e)
