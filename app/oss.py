import logging
import posixpath
import time
from typing import Optional
from urllib.parse import quote, urlparse

import oss2

from .config import Settings
from .errors import StorageError

logger = logging.getLogger(__name__)


def build_public_url(endpoint: str, bucket_name: str, key: str) -> Optional[str]:
    """根据 endpoint 推断公有读URL（要求 bucket 配置为公有读）。
    若 endpoint 不是 http(s) 形式，则返回 None。
    """
    parsed = urlparse(endpoint)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{bucket_name}.{parsed.netloc}/{quote(key)}"
    return None


def suggest_object_key(original_filename: str, now_ms: Optional[int] = None) -> str:
    """uploads/<毫秒时间戳>-<原文件名>，原文件名去掉目录部分。"""
    name = posixpath.basename((original_filename or "").replace("\\", "/")) or "image"
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"uploads/{now_ms}-{name}"


class OssObjectStorage:
    def __init__(self, bucket: oss2.Bucket, endpoint: str):
        self.bucket = bucket
        self.endpoint = endpoint

    @classmethod
    def from_settings(cls, settings: Settings) -> "OssObjectStorage":
        auth = oss2.Auth(settings.OSS_ACCESS_KEY_ID, settings.OSS_ACCESS_KEY_SECRET)
        bucket = oss2.Bucket(auth, settings.OSS_ENDPOINT, settings.STORAGE_BUCKET)
        return cls(bucket, settings.OSS_ENDPOINT)

    def put(self, data: bytes, content_type: str, key: str) -> str:
        """上传字节到OSS，返回公有读URL。"""
        try:
            # 同一毫秒同名上传会得到相同 key，禁止覆盖已有对象
            self.bucket.put_object(
                key, data, headers={"Content-Type": content_type, "x-oss-forbid-overwrite": "true"}
            )
        except oss2.exceptions.OssError as e:
            logger.error("OSS上传失败: %s (错误码: %s, key=%s)", e.message, e.code, key)
            raise StorageError() from e
        public_url = build_public_url(self.endpoint, self.bucket.bucket_name, key)
        if not public_url:
            logger.error("无法从 endpoint 推断公有读URL: %r", self.endpoint)
            raise StorageError()
        return public_url
