"""File uploads: storage on local disk, thumbnails, optimisation and statistics."""

import calendar
import io
import os
import posixpath
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional, Union

from PIL import Image
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.models import (
    ConflictError,
    FileUsage,
    NotFoundError,
    ServiceError,
    UploadedFile,
    ValidationError,
    format_file_size,
)

DEFAULT_CATEGORY = "general"
DEFAULT_BASE_URL = "/uploads"
SORT_FIELDS = frozenset({"created_at", "original_name", "size", "category"})
DEFAULT_SORT_FIELD = "created_at"
DEFAULT_SORT_ORDER = "desc"
RECENT_UPLOADS = 10
STATS_MONTHS = 12

_IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"})

_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
}

# Only these encodings are decoded for dimensions, thumbnails and optimisation.
_DECODABLE_FORMATS = ("JPEG", "PNG")

Source = Union[bytes, bytearray, str, os.PathLike, BinaryIO]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _months_before(moment: datetime, months: int) -> datetime:
    year, month_index = divmod(moment.year * 12 + moment.month - 1 - months, 12)
    month = month_index + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _split_ext(filename: str) -> tuple[str, str]:
    """Split off the extension the way a path's last dot does."""
    base = filename.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    if dot == -1:
        return filename, ""
    ext = base[dot:]
    return filename[: len(filename) - len(ext)], ext


@dataclass
class UploadSettings:
    """Storage location, URL base and limits for uploads."""

    local_path: str = "uploads"
    cdn_base_url: str = ""
    max_size: int = 10 * 1024 * 1024
    allowed_extensions: tuple[str, ...] = ("jpg", "jpeg", "png", "gif", "webp")


@dataclass
class ImageUploadRequest:
    """A single file to store; size defaults to the number of bytes read."""

    file: BinaryIO
    filename: str
    uploaded_by: int
    size: Optional[int] = None
    category: str = ""
    description: str = ""
    alt_text: str = ""
    tags: str = ""


@dataclass
class ImageUpdateRequest:
    """Metadata to change; None leaves a field as it is."""

    category: Optional[str] = None
    description: Optional[str] = None
    alt_text: Optional[str] = None
    tags: Optional[str] = None
    is_public: Optional[bool] = None


@dataclass
class ImageOptimizeRequest:
    """Re-encoding parameters for an image."""

    quality: int = 85
    width: int = 0
    height: int = 0


@dataclass
class BulkUploadRequest:
    """Several files given as (filename, bytes, path or binary stream) pairs."""

    files: list[tuple[str, Source]]
    uploaded_by: int
    category: str = ""
    description: str = ""


@dataclass
class FailedUpload:
    """A file that could not be stored, with the reason."""

    filename: str
    error: str


@dataclass
class UploadSummary:
    """Counts and total size of a bulk upload."""

    total_files: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_size: int = 0


@dataclass
class BulkUploadResult:
    """Outcome of a bulk upload."""

    uploaded: list[UploadedFile] = field(default_factory=list)
    failed: list[FailedUpload] = field(default_factory=list)
    summary: UploadSummary = field(default_factory=UploadSummary)


@dataclass
class ImageListRequest:
    """Filters, sorting and paging for listing uploads."""

    page: int = 1
    limit: int = 20
    category: str = ""
    search: str = ""
    sort_by: str = ""
    sort_order: str = ""


@dataclass
class Pagination:
    """Paging details of a list response."""

    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


@dataclass
class ImageListResponse:
    """A page of uploads."""

    images: list[UploadedFile]
    pagination: Pagination


@dataclass
class MonthlyUpload:
    """Uploads in one calendar month."""

    month: str
    count: int
    size: int


@dataclass
class UploadStats:
    """Aggregate upload statistics."""

    total_files: int = 0
    total_size: int = 0
    total_size_formatted: str = ""
    image_count: int = 0
    category_breakdown: dict[str, int] = field(default_factory=dict)
    monthly_uploads: list[MonthlyUpload] = field(default_factory=list)
    recent_uploads: list[UploadedFile] = field(default_factory=list)


def _open_source(source: Source) -> tuple[BinaryIO, Optional[int], bool]:
    """Return (stream, size, owned) for a bulk upload entry."""
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(bytes(source)), len(source), True
    if isinstance(source, (str, os.PathLike)):
        handle = open(source, "rb")
        return handle, os.fstat(handle.fileno()).st_size, True
    return source, None, False


def _is_image_file(filename: str) -> bool:
    return _split_ext(filename)[1].lower() in _IMAGE_EXTENSIONS


def _mime_type(filename: str) -> str:
    return _MIME_TYPES.get(_split_ext(filename)[1].lower(), "application/octet-stream")


def _unique_filename(original: str) -> str:
    name, ext = _split_ext(original)
    for char in (" ", "/", "\\"):
        name = name.replace(char, "_")
    return f"{name}_{str(uuid.uuid4())[:8]}{ext}"


def _image_dimensions(path: Path) -> tuple[int, int]:
    try:
        with Image.open(path, formats=_DECODABLE_FORMATS) as image:
            return image.size
    except (OSError, ValueError):
        return 0, 0


def _live(stmt):
    return stmt.where(UploadedFile.deleted_at.is_(None))


class UploadService:
    """Stores uploaded files and keeps their records."""

    def __init__(self, session: Session, settings: Optional[UploadSettings] = None):
        self._session = session
        self._settings = settings or UploadSettings()

    @property
    def _root(self) -> Path:
        return Path(self._settings.local_path)

    @property
    def _base_url(self) -> str:
        return self._settings.cdn_base_url or DEFAULT_BASE_URL

    def upload_image(self, request: ImageUploadRequest) -> UploadedFile:
        """Validate, store and record a single file."""
        data = request.file.read()
        size = request.size if request.size is not None else len(data)
        self._validate(request.filename, size)

        filename = _unique_filename(request.filename)
        category = request.category or DEFAULT_CATEGORY
        relative = posixpath.join(category, filename)
        full_path = self._root / category / filename

        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ServiceError(f"failed to create directory: {exc}") from exc
        try:
            full_path.write_bytes(data)
        except OSError as exc:
            raise ServiceError(f"failed to save file: {exc}") from exc

        width, height = _image_dimensions(full_path)

        thumbnail_url = ""
        if _is_image_file(request.filename):
            thumbnail = self._make_thumbnail(full_path, category, filename)
            if thumbnail is not None:
                thumbnail_url = self._file_url(thumbnail)

        record = UploadedFile(
            original_name=request.filename,
            filename=filename,
            path=relative,
            url=self._file_url(relative),
            mime_type=_mime_type(request.filename),
            size=size,
            category=category,
            description=request.description,
            alt_text=request.alt_text,
            tags=request.tags,
            width=width,
            height=height,
            thumbnail_url=thumbnail_url,
            uploaded_by=request.uploaded_by,
            is_public=True,
        )
        try:
            self._session.add(record)
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            full_path.unlink(missing_ok=True)
            raise ServiceError(f"failed to save file info: {exc}") from exc
        return record

    def bulk_upload_images(self, request: BulkUploadRequest) -> BulkUploadResult:
        """Upload each file in turn, collecting successes and failures."""
        result = BulkUploadResult(summary=UploadSummary(total_files=len(request.files)))
        for filename, source in request.files:
            try:
                stream, size, owned = _open_source(source)
            except OSError as exc:
                result.failed.append(FailedUpload(filename, f"Failed to open file: {exc}"))
                result.summary.failure_count += 1
                continue
            try:
                uploaded = self.upload_image(
                    ImageUploadRequest(
                        file=stream,
                        filename=filename,
                        size=size,
                        category=request.category,
                        description=request.description,
                        uploaded_by=request.uploaded_by,
                    )
                )
            except ServiceError as exc:
                result.failed.append(FailedUpload(filename, str(exc)))
                result.summary.failure_count += 1
            else:
                result.uploaded.append(uploaded)
                result.summary.success_count += 1
                result.summary.total_size += uploaded.size
            finally:
                if owned:
                    stream.close()
        return result

    def delete_image(self, image_id: int, user_id: int, force: bool = False) -> None:
        """Remove a file and its derivatives; refuses files in use unless forced."""
        record = self._find(image_id)
        if not force:
            in_use = self._session.scalar(
                select(func.count()).select_from(FileUsage).where(FileUsage.file_id == image_id)
            )
            if in_use:
                raise ConflictError(
                    "image is currently in use and cannot be deleted. "
                    "Use force=true to delete anyway"
                )

        try:
            (self._root / record.path).unlink(missing_ok=True)
        except OSError as exc:
            raise ServiceError(f"failed to delete file: {exc}") from exc

        for url in (record.thumbnail_url, record.optimized_url):
            if url:
                try:
                    (self._root / self._url_to_path(url)).unlink(missing_ok=True)
                except OSError:
                    pass

        try:
            for usage in self._session.scalars(
                select(FileUsage).where(FileUsage.file_id == image_id)
            ).all():
                self._session.delete(usage)
            record.deleted_at = _utcnow()
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to delete image record: {exc}") from exc

    def get_images(self, request: ImageListRequest) -> ImageListResponse:
        """Return a filtered, sorted page of uploads."""
        if request.limit <= 0:
            raise ValidationError("limit must be positive")

        stmt = _live(select(UploadedFile))
        if request.category:
            stmt = stmt.where(UploadedFile.category == request.category)
        if request.search:
            term = f"%{request.search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(UploadedFile.original_name).like(term),
                    func.lower(UploadedFile.description).like(term),
                    func.lower(UploadedFile.tags).like(term),
                )
            )

        total = self._session.scalar(select(func.count()).select_from(stmt.subquery())) or 0

        sort_by = request.sort_by if request.sort_by in SORT_FIELDS else DEFAULT_SORT_FIELD
        sort_order = (
            request.sort_order if request.sort_order in ("asc", "desc") else DEFAULT_SORT_ORDER
        )
        column = getattr(UploadedFile, sort_by)
        if sort_order == "desc":
            ordering = (column.desc(), UploadedFile.id.desc())
        else:
            ordering = (column.asc(), UploadedFile.id.asc())

        offset = max(0, (request.page - 1) * request.limit)
        images = self._session.scalars(
            stmt.order_by(*ordering).offset(offset).limit(request.limit)
        ).all()

        total_pages = -(-total // request.limit)
        return ImageListResponse(
            images=list(images),
            pagination=Pagination(
                page=request.page,
                limit=request.limit,
                total=total,
                total_pages=total_pages,
                has_next=request.page < total_pages,
                has_prev=request.page > 1,
            ),
        )

    def get_image(self, image_id: int) -> UploadedFile:
        """Return one upload by id."""
        return self._find(image_id)

    def get_image_by_filename(self, filename: str) -> UploadedFile:
        """Return one upload by its stored filename."""
        record = self._session.scalar(
            _live(select(UploadedFile)).where(UploadedFile.filename == filename)
        )
        if record is None:
            raise NotFoundError("image not found")
        return record

    def update_image(
        self, image_id: int, user_id: int, request: ImageUpdateRequest
    ) -> UploadedFile:
        """Change an upload's metadata."""
        record = self._find(image_id)
        updates = {
            name: getattr(request, name)
            for name in ("category", "description", "alt_text", "tags", "is_public")
            if getattr(request, name) is not None
        }
        if updates:
            for name, value in updates.items():
                setattr(record, name, value)
            try:
                self._session.commit()
            except SQLAlchemyError as exc:
                self._session.rollback()
                raise ServiceError(f"failed to update image: {exc}") from exc
        return record

    def optimize_image(
        self, image_id: int, user_id: int, request: ImageOptimizeRequest
    ) -> UploadedFile:
        """Re-encode an image and record the optimised copy's URL."""
        record = self._find(image_id)
        if not record.is_image():
            raise ValidationError("file is not an image")

        name, ext = _split_ext(record.filename)
        optimized_name = (
            f"{name}_optimized_{request.width}x{request.height}_q{request.quality}{ext}"
        )
        source = self._root / record.path
        target = self._root / record.category / optimized_name
        try:
            self._reencode(source, target, request.quality)
        except (OSError, ValueError) as exc:
            raise ServiceError(f"failed to optimize image: {exc}") from exc

        record.optimized_url = self._file_url(posixpath.join(record.category, optimized_name))
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to update optimized URL: {exc}") from exc
        return record

    def get_upload_stats(self) -> UploadStats:
        """Totals, category breakdown, last twelve months and latest uploads."""
        count_stmt = _live(select(func.count()).select_from(UploadedFile))
        total_files = self._session.scalar(count_stmt) or 0
        total_size = self._session.scalar(
            _live(select(func.coalesce(func.sum(UploadedFile.size), 0)))
        ) or 0
        image_count = self._session.scalar(
            count_stmt.where(UploadedFile.mime_type.like("image/%"))
        ) or 0

        breakdown = {
            category: int(count)
            for category, count in self._session.execute(
                _live(select(UploadedFile.category, func.count())).group_by(
                    UploadedFile.category
                )
            ).all()
        }

        since = _months_before(_utcnow(), STATS_MONTHS)
        monthly: dict[str, list[int]] = {}
        for created_at, size in self._session.execute(
            select(UploadedFile.created_at, UploadedFile.size).where(
                UploadedFile.created_at >= since
            )
        ).all():
            bucket = monthly.setdefault(created_at.strftime("%Y-%m"), [0, 0])
            bucket[0] += 1
            bucket[1] += size or 0

        recent = self._session.scalars(
            _live(select(UploadedFile))
            .order_by(UploadedFile.created_at.desc(), UploadedFile.id.desc())
            .limit(RECENT_UPLOADS)
        ).all()

        return UploadStats(
            total_files=total_files,
            total_size=int(total_size),
            total_size_formatted=format_file_size(int(total_size)),
            image_count=image_count,
            category_breakdown=breakdown,
            monthly_uploads=[
                MonthlyUpload(month=month, count=count, size=size)
                for month, (count, size) in sorted(monthly.items(), reverse=True)
            ],
            recent_uploads=list(recent),
        )

    def _find(self, image_id: int) -> UploadedFile:
        record = self._session.get(UploadedFile, image_id)
        if record is None or record.deleted_at is not None:
            raise NotFoundError("image not found")
        return record

    def _validate(self, filename: str, size: int) -> None:
        if size > self._settings.max_size:
            raise ValidationError(
                "file size exceeds maximum allowed size of "
                f"{format_file_size(self._settings.max_size)}"
            )
        ext = _split_ext(filename)[1].lower().removeprefix(".")
        allowed = self._settings.allowed_extensions
        if ext not in allowed:
            raise ValidationError(
                f"file type '{ext}' is not allowed. Allowed types: [{' '.join(allowed)}]"
            )

    def _make_thumbnail(self, original: Path, category: str, filename: str) -> Optional[str]:
        """Store a thumbnail copy next to the original; None when it cannot be made."""
        try:
            with Image.open(original, formats=_DECODABLE_FORMATS) as image:
                image.load()
        except (OSError, ValueError):
            return None
        name, ext = _split_ext(filename)
        thumbnail_name = f"{name}_thumb{ext}"
        try:
            shutil.copyfile(original, self._root / category / thumbnail_name)
        except OSError:
            return None
        return posixpath.join(category, thumbnail_name)

    @staticmethod
    def _reencode(source: Path, target: Path, quality: int) -> None:
        with Image.open(source, formats=_DECODABLE_FORMATS) as image:
            image.load()
            if image.format == "JPEG":
                image.save(target, format="JPEG", quality=min(max(quality, 1), 100))
            elif image.format == "PNG":
                image.save(target, format="PNG")
            else:
                raise ValueError(f"unsupported image format: {image.format.lower()}")

    def _file_url(self, relative: str) -> str:
        return posixpath.normpath(posixpath.join(self._base_url, relative))

    def _url_to_path(self, url: str) -> str:
        return url.removeprefix(self._base_url + "/")