import logging
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Dict, Mapping, Optional, Tuple

from common import storage
from common.config import settings
from common.errors import ValidationError
from common.job_schema import Job, JobStatus, MediaKind

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

EXTENSIONS = {
    MediaKind.IMAGE: {"jpg", "jpeg", "png", "gif", "webp", "bmp", "tiff"},
    MediaKind.VIDEO: {"mp4", "avi", "mov", "wmv", "flv", "webm", "mkv"},
    MediaKind.AUDIO: {"mp3", "wav", "flac", "aac", "ogg", "wma", "m4a"},
    MediaKind.PDF: {"pdf"},
}

IMAGE_OUTPUT_FORMATS = {"jpeg", "jpg", "png", "webp"}


def detect_media_kind(filename: str) -> MediaKind:
    ext = Path(filename).suffix.lower().lstrip(".")
    for kind, extensions in EXTENSIONS.items():
        if ext in extensions:
            return kind
    raise ValidationError(f"Unsupported file type: {ext or filename}")


def parse_options(kind: MediaKind, form: Mapping[str, Optional[str]]) -> Dict[str, Any]:
    """Keeps only the form fields that apply to `kind`, converting numeric ones."""
    options: Dict[str, Any] = {}

    if kind == MediaKind.IMAGE:
        _set_int(options, "quality", form.get("quality"))
        if form.get("format"):
            fmt = str(form["format"]).lower()
            if fmt not in IMAGE_OUTPUT_FORMATS:
                raise ValidationError(f"Unsupported image format: {fmt}")
            options["format"] = fmt
        _set_int(options, "width", form.get("width"))
        _set_int(options, "height", form.get("height"))
    elif kind in (MediaKind.VIDEO, MediaKind.AUDIO):
        _set_int(options, "quality", form.get("quality"))
        if form.get("bitrate"):
            options["bitrate"] = str(form["bitrate"])
    elif kind == MediaKind.PDF:
        # PDF quality is a Ghostscript preset name, not a number.
        if form.get("pdfQuality"):
            options["quality"] = str(form["pdfQuality"])
        _set_int(options, "dpi", form.get("dpi"))

    return options


def save_upload(stream: BinaryIO, destination: Path, max_bytes: Optional[int] = None) -> int:
    """Copies an upload to disk in chunks; removes it and raises if it exceeds max_bytes."""
    max_bytes = settings.max_upload_bytes if max_bytes is None else max_bytes
    destination.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with open(destination, "wb") as out:
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                break
            out.write(chunk)
    if written > max_bytes:
        storage.delete_file(destination)
        raise ValidationError(f"File exceeds the {max_bytes} byte upload limit", status_code=413)
    return written


def create_job_from_upload(
    filename: Optional[str],
    stream: Optional[BinaryIO],
    form: Mapping[str, Optional[str]],
) -> Job:
    """
    1. Validates the filename and options (nothing is written if they are bad).
    2. Stores the upload under upload_dir as <fileId><ext>.
    3. Inserts a pending Job pointing at it.
    """
    if stream is None or not filename:
        raise ValidationError("No file uploaded")

    kind = detect_media_kind(filename)
    options = parse_options(kind, form)

    file_id, dest = _new_upload_path(filename)
    size = save_upload(stream, dest)

    job = Job(
        external_id=file_id,
        display_name=Path(filename).name,
        source_path=str(dest),
        media_kind=kind,
        status=JobStatus.PENDING,
        options=options,
        original_size=size,
    )
    try:
        return storage.create_job(job)
    except Exception:
        storage.delete_file(dest)
        raise


def _new_upload_path(filename: str) -> Tuple[str, Path]:
    file_id = str(uuid.uuid4())
    return file_id, settings.upload_dir / f"{file_id}{Path(filename).suffix.lower()}"


def _set_int(options: Dict[str, Any], key: str, raw: Optional[str]) -> None:
    if raw is None or raw == "":
        return
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Option '{key}' must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ValidationError(f"Option '{key}' must not be negative, got {value}")
    options[key] = value
