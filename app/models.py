import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from .database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImageRecord(Base):
    """一次成功上传对应一行，只增不改。"""

    __tablename__ = "images"

    id = Column(String(36), primary_key=True, default=_new_id)
    # 客户端自报的钱包地址或用户标识，未经认证
    user_address = Column(String(255), nullable=True)
    path = Column(String(512), nullable=False, unique=True)
    mime = Column(String(127), nullable=False)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    public_url = Column(Text, nullable=True)
    file_size = Column(Integer, nullable=True)
    original_name = Column(String(255), nullable=True)


Index("ix_images_uploaded_at", ImageRecord.uploaded_at.desc())
Index("ix_images_user_address", ImageRecord.user_address)
