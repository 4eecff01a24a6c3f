#!/usr/bin/env python3
"""建库建表。需先 `pip install -e .`，再运行 python scripts/db_init.py。"""
import pymysql

from app.config import Settings, load_settings
from app.database import Base, build_engine
from app import models  # noqa: F401  注册 images 表


def create_database_if_not_exists(settings: Settings) -> None:
    if settings.DATABASE_URL:
        print("[db-init] DATABASE_URL is set, skipping CREATE DATABASE")
        return
    conn = pymysql.connect(
        host=settings.MYSQL_HOST,
        port=settings.MYSQL_PORT,
        user=settings.MYSQL_USER,
        password=settings.MYSQL_PASSWORD,
        database="mysql",
        charset="utf8mb4",
        autocommit=True,
    )
    try:
        with conn.cursor() as cur:
            cur.execute(
                f"CREATE DATABASE IF NOT EXISTS `{settings.MYSQL_DB}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;"
            )
    finally:
        conn.close()


def create_tables(settings: Settings) -> None:
    engine = build_engine(settings.database_uri)
    Base.metadata.create_all(bind=engine)


def main() -> None:
    settings = load_settings()
    print("[db-init] Creating database if not exists...")
    create_database_if_not_exists(settings)
    print("[db-init] Creating tables...")
    create_tables(settings)
    print("[db-init] Done.")


if __name__ == "__main__":
    main()
