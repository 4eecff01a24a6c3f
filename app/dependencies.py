from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .payment import FacilitatorClient
from .storage import ImageStore


@dataclass
class AppContext:
    """进程启动时构建一次的客户端集合，挂在 app.state 上。"""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    store: ImageStore
    facilitator: FacilitatorClient


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_store(request: Request) -> ImageStore:
    return get_context(request).store
