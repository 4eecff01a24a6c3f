import random
from datetime import datetime, timedelta, timezone
from io import BytesIO

from fastapi import status
from fastapi.testclient import TestClient

from app.database import Base
from app.models import ImageRecord

from conftest import MAX_UPLOAD_SIZE

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _image(name="cat.png", data=PNG_BYTES, content_type="image/png"):
    return {"image": (name, BytesIO(data), content_type)}


def test_upload_image_success_then_listed(client, objects, paid_headers):
    """测试：付款且文件合法时返回201，随后 GET /images 能查到同一 URL"""
    headers = dict(paid_headers, **{"x-user-address": "0xUser"})
    response = client.post("/upload", files=_image(), headers=headers)

    assert response.status_code == status.HTTP_201_CREATED
    body = response.json()
    assert body["message"] == "Image uploaded successfully"
    assert body["url"]
    assert body["id"]
    assert body["uploadedAt"]
    assert body["path"].startswith("uploads/")
    assert body["path"].endswith("-cat.png")

    # 存储收到原始字节与类型
    assert len(objects.puts) == 1
    key, data, content_type = objects.puts[0]
    assert key == body["path"]
    assert data == PNG_BYTES
    assert content_type == "image/png"

    images = client.get("/images").json()["images"]
    assert len(images) == 1
    record = images[0]
    assert record["public_url"] == body["url"]
    assert record["id"] == body["id"]
    assert record["user_address"] == "0xUser"
    assert record["mime"] == "image/png"
    assert record["file_size"] == len(PNG_BYTES)
    assert record["original_name"] == "cat.png"


def test_upload_without_user_address_records_null(client, paid_headers):
    response = client.post("/upload", files=_image(), headers=paid_headers)

    assert response.status_code == status.HTTP_201_CREATED
    assert client.get("/images").json()["images"][0]["user_address"] is None


def test_upload_non_image_rejected(client, objects, facilitator, paid_headers):
    """测试：非图片类型返回400，且不写存储、不写数据库、不结算"""
    response = client.post(
        "/upload",
        files=_image(name="notes.txt", data=b"hello", content_type="text/plain"),
        headers=paid_headers,
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json() == {"error": "Only image files are allowed"}
    assert objects.puts == []
    assert client.get("/images").json()["images"] == []
    assert facilitator.settled == []


def test_upload_oversized_rejected(client, objects, paid_headers):
    """测试：超过大小上限返回400，且在存储调用之前拒绝"""
    response = client.post(
        "/upload",
        files=_image(data=b"\x00" * (MAX_UPLOAD_SIZE + 1)),
        headers=paid_headers,
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error"].startswith("File too large. Maximum size is")
    assert objects.puts == []
    assert client.get("/images").json()["images"] == []


def test_upload_exactly_at_limit_accepted(client, paid_headers):
    response = client.post("/upload", files=_image(data=b"\x01" * MAX_UPLOAD_SIZE), headers=paid_headers)

    assert response.status_code == status.HTTP_201_CREATED


def test_upload_missing_file(client, objects, paid_headers):
    response = client.post("/upload", data={"other": "value"}, headers=paid_headers)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json() == {"error": "No image file provided"}
    assert objects.puts == []


def test_upload_image_field_as_text(client, objects, facilitator, paid_headers):
    """测试：image 字段是普通文本而非文件时返回400，错误格式统一"""
    response = client.post("/upload", data={"image": "not-a-file"}, headers=paid_headers)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json() == {"error": "No image file provided"}
    assert objects.puts == []
    assert facilitator.settled == []


def test_upload_empty_file(client, objects, paid_headers):
    response = client.post("/upload", files=_image(data=b""), headers=paid_headers)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json() == {"error": "Uploaded file is empty"}
    assert objects.puts == []


def test_upload_storage_error(client, objects, facilitator, paid_headers):
    """测试：存储失败返回500，不落库也不结算"""
    objects.fail = True

    response = client.post("/upload", files=_image(), headers=paid_headers)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json() == {"error": "Failed to upload image to storage"}
    assert client.get("/images").json()["images"] == []
    assert facilitator.settled == []


def test_upload_metadata_failure_still_succeeds(client, engine, objects, paid_headers):
    """测试：存储成功但入库失败时仍返回201，只带 url 与 path，没有 id"""
    Base.metadata.drop_all(bind=engine)

    response = client.post("/upload", files=_image(), headers=paid_headers)

    assert response.status_code == status.HTTP_201_CREATED
    body = response.json()
    assert body["message"] == "Image uploaded successfully (metadata save failed)"
    assert body["url"]
    assert body["path"].startswith("uploads/")
    assert "id" not in body
    assert "uploadedAt" not in body
    # 已上传的文件不回滚
    assert len(objects.puts) == 1


def test_list_images_ordered_by_uploaded_at_desc(client, app):
    """测试：任意插入顺序下，列表都按 uploaded_at 倒序"""
    store = app.state.context.store
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    offsets = list(range(6))
    random.Random(7).shuffle(offsets)
    for i in offsets:
        store.record_metadata(
            ImageRecord(
                path=f"uploads/{i}-img.png",
                mime="image/png",
                uploaded_at=base + timedelta(minutes=i),
                public_url=f"https://test-bucket.oss.example.com/uploads/{i}-img.png",
                file_size=10,
                original_name="img.png",
            )
        )

    images = client.get("/images").json()["images"]

    assert [img["path"] for img in images] == [f"uploads/{i}-img.png" for i in reversed(range(6))]


def test_list_images_not_payment_gated(client, facilitator):
    response = client.get("/images")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"images": []}
    assert facilitator.verified == []


def test_list_images_database_error(client, engine):
    Base.metadata.drop_all(bind=engine)

    response = client.get("/images")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json() == {"error": "Failed to fetch images"}


def test_unhandled_error_returns_generic_500(app, monkeypatch, paid_headers):
    """测试：未预期的异常统一返回500通用信息"""
    def boom(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(app.state.context.store, "save_upload", boom)

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.post("/upload", files=_image(), headers=paid_headers)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json() == {"error": "Internal server error"}
