import io

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from storefront.models import (
    Base,
    ConflictError,
    FileUsage,
    NotFoundError,
    ValidationError,
    format_file_size,
)
from storefront.uploads import (
    BulkUploadRequest,
    ImageListRequest,
    ImageOptimizeRequest,
    ImageUpdateRequest,
    ImageUploadRequest,
    UploadService,
    UploadSettings,
)


def _image_bytes(fmt="PNG", size=(40, 20)):
    buffer = io.BytesIO()
    Image.new("RGB", size, (200, 10, 10)).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def store(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def service(store):
    engine = create_engine("sqlite://")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        settings = UploadSettings(
            local_path=str(store),
            max_size=1024 * 1024,
            allowed_extensions=("jpg", "jpeg", "png", "gif", "txt"),
        )
        yield UploadService(session, settings)


def _upload(service, name="photo.png", data=None, **kwargs):
    payload = data if data is not None else _image_bytes()
    return service.upload_image(
        ImageUploadRequest(file=io.BytesIO(payload), filename=name, uploaded_by=1, **kwargs)
    )


def test_upload_png_records_file_and_thumbnail(service, store):
    record = _upload(service, "my photo.png")
    assert record.category == "general"
    assert record.mime_type == "image/png"
    assert (record.width, record.height) == (40, 20)
    assert record.filename.startswith("my_photo_")
    assert record.filename.endswith(".png")
    assert record.url == "/uploads/general/" + record.filename
    assert (store / record.path).read_bytes() == _image_bytes()
    assert record.thumbnail_url.endswith("_thumb.png")
    thumb_rel = record.thumbnail_url.removeprefix("/uploads/")
    assert (store / thumb_rel).exists()
    assert record.size == len(_image_bytes())


def test_upload_uses_given_category(service, store):
    record = _upload(service, "a.jpg", data=_image_bytes("JPEG"), category="products")
    assert record.path == "products/" + record.filename
    assert record.mime_type == "image/jpeg"
    assert (store / "products" / record.filename).exists()


def test_text_file_has_no_thumbnail_or_dimensions(service):
    record = _upload(service, "notes.txt", data=b"hello")
    assert record.mime_type == "text/plain"
    assert record.thumbnail_url == ""
    assert (record.width, record.height) == (0, 0)


def test_upload_rejects_large_file(service):
    with pytest.raises(ValidationError, match="exceeds maximum"):
        _upload(service, "big.png", size=2 * 1024 * 1024)


def test_upload_rejects_extension(service):
    with pytest.raises(ValidationError, match="'exe' is not allowed"):
        _upload(service, "tool.exe", data=b"x")


def test_bulk_upload_collects_results(service, tmp_path):
    result = service.bulk_upload_images(
        BulkUploadRequest(
            files=[
                ("one.png", _image_bytes()),
                ("bad.exe", b"x"),
                ("ghost.png", tmp_path / "missing.png"),
            ],
            uploaded_by=3,
        )
    )
    assert result.summary.total_files == 3
    assert result.summary.success_count == 1
    assert result.summary.failure_count == 2
    assert result.summary.total_size == result.uploaded[0].size
    errors = {failed.filename: failed.error for failed in result.failed}
    assert errors["ghost.png"].startswith("Failed to open file")
    assert "not allowed" in errors["bad.exe"]


def test_delete_in_use_requires_force(service, store):
    record = _upload(service)
    service._session.add(FileUsage(file_id=record.id, entity_type="product", entity_id=5))
    service._session.commit()
    with pytest.raises(ConflictError):
        service.delete_image(record.id, 1)
    path = store / record.path
    service.delete_image(record.id, 1, force=True)
    assert not path.exists()
    with pytest.raises(NotFoundError):
        service.get_image(record.id)


def test_delete_removes_thumbnail(service, store):
    record = _upload(service)
    thumb = store / record.thumbnail_url.removeprefix("/uploads/")
    service.delete_image(record.id, 1)
    assert not thumb.exists()
    with pytest.raises(NotFoundError):
        service.get_image_by_filename(record.filename)


def test_get_images_filters_and_pages(service):
    first = _upload(service, "red.png", category="a", description="Red Shirt")
    _upload(service, "blue.png", category="a")
    _upload(service, "green.png", category="b")

    page = service.get_images(ImageListRequest(page=1, limit=2, category="a"))
    assert page.pagination.total == 2
    assert page.pagination.total_pages == 1
    assert not page.pagination.has_next

    found = service.get_images(ImageListRequest(search="SHIRT"))
    assert [image.id for image in found.images] == [first.id]

    ordered = service.get_images(ImageListRequest(limit=1, sort_by="original_name", sort_order="asc"))
    assert ordered.images[0].original_name == "blue.png"
    assert ordered.pagination.has_next


def test_get_images_rejects_zero_limit(service):
    with pytest.raises(ValidationError):
        service.get_images(ImageListRequest(limit=0))


def test_update_image_changes_only_given_fields(service):
    record = _upload(service, description="old")
    updated = service.update_image(record.id, 1, ImageUpdateRequest(alt_text="alt", is_public=False))
    assert updated.alt_text == "alt"
    assert updated.is_public is False
    assert service.get_image(record.id).description == "old"


def test_optimize_jpeg(service, store):
    record = _upload(service, "pic.jpg", data=_image_bytes("JPEG"))
    result = service.optimize_image(record.id, 1, ImageOptimizeRequest(quality=50, width=10, height=5))
    assert result.optimized_url.endswith("_optimized_10x5_q50.jpg")
    path = store / result.optimized_url.removeprefix("/uploads/")
    with Image.open(path) as image:
        assert image.format == "JPEG"


def test_optimize_rejects_non_image(service):
    record = _upload(service, "notes.txt", data=b"hello")
    with pytest.raises(ValidationError):
        service.optimize_image(record.id, 1, ImageOptimizeRequest())


def test_upload_stats(service):
    first = _upload(service, "x.png", category="a")
    second = _upload(service, "y.txt", data=b"abc", category="b")
    stats = service.get_upload_stats()
    assert stats.total_files == 2
    assert stats.total_size == first.size + second.size
    assert stats.total_size_formatted == format_file_size(stats.total_size)
    assert stats.image_count == 1
    assert stats.category_breakdown == {"a": 1, "b": 1}
    assert sum(month.count for month in stats.monthly_uploads) == 2
    assert {upload.id for upload in stats.recent_uploads} == {first.id, second.id}