from typing import List, Optional
from urllib.parse import quote_plus

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """项目配置，支持从环境变量与.env文件加载。"""

    # x402 支付
    FACILITATOR_URL: str = Field(..., min_length=1)
    ADDRESS: str = Field(..., min_length=1, description="收款地址")
    NETWORK: str = "base-sepolia"
    UPLOAD_PRICE: str = "$0.0001"
    FACILITATOR_TIMEOUT: float = 30.0

    # 上传限制：5MB（可调到 10MB）
    MAX_UPLOAD_SIZE: int = 5 * 1024 * 1024

    # 服务
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    # 数据库：DATABASE_URL 优先，否则使用 MySQL
    DATABASE_URL: Optional[str] = None
    MYSQL_HOST: str = "localhost"
    MYSQL_PORT: int = 3306
    MYSQL_DB: str = "image_uploader"
    MYSQL_USER: str = "root"
    MYSQL_PASSWORD: str = "password"

    # OSS（阿里云），bucket 需配置为公有读
    OSS_ENDPOINT: str = "https://oss-your-endpoint.aliyuncs.com"
    OSS_ACCESS_KEY_ID: str = ""
    OSS_ACCESS_KEY_SECRET: str = ""
    STORAGE_BUCKET: str = "images"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def database_uri(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        password = quote_plus(self.MYSQL_PASSWORD)
        return (
            f"mysql+pymysql://{self.MYSQL_USER}:{password}@{self.MYSQL_HOST}:{self.MYSQL_PORT}/"
            f"{self.MYSQL_DB}?charset=utf8mb4"
        )


def load_settings(**overrides) -> Settings:
    """启动时加载并校验配置，缺少必填项时抛出 ConfigurationError。"""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise ConfigurationError(
            f"Invalid or missing configuration: {', '.join(fields)}", fields=fields
        ) from e
