from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ImageOut(BaseModel):
    id: str
    user_address: Optional[str] = None
    path: str
    mime: str
    uploaded_at: datetime
    public_url: Optional[str] = None
    file_size: Optional[int] = None
    original_name: Optional[str] = None

    class Config:
        from_attributes = True


class ImageListResponse(BaseModel):
    images: List[ImageOut]


class UploadResponse(BaseModel):
    message: str
    id: Optional[str] = None
    url: str
    path: str
    uploaded_at: Optional[datetime] = Field(None, alias="uploadedAt")

    class Config:
        populate_by_name = True


class HealthResponse(BaseModel):
    status: str = "ok"
    message: str
    timestamp: datetime
