"""
Compression executor.

One entry point, `compress_file`, hands a source file to the tool that fits its
media kind: Pillow for images, ffmpeg for video and audio, Ghostscript for PDF.
Every tool writes to a temporary sibling of the destination which is renamed
into place only once the tool has succeeded, so a destination file never exists
half-written.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from PIL import Image, UnidentifiedImageError

from common.config import settings
from common.errors import ExecutionError
from common.job_schema import MediaKind

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

IMAGE_FORMATS = {"jpeg": "JPEG", "jpg": "JPEG", "png": "PNG", "webp": "WEBP"}
PDF_PRESETS = {"screen", "ebook", "printer", "prepress"}

DEFAULT_IMAGE_QUALITY = 80
DEFAULT_VIDEO_CRF = 23
DEFAULT_VIDEO_BITRATE = "1M"
DEFAULT_AUDIO_QUALITY = 4
DEFAULT_AUDIO_BITRATE = "128k"
DEFAULT_PDF_PRESET = "ebook"
DEFAULT_PDF_DPI = 150

STDERR_TAIL_CHARS = 500


def compress_file(
    source_path: PathLike,
    media_kind: MediaKind,
    options: Optional[Mapping[str, Any]],
    destination_path: PathLike,
) -> int:
    """Compresses `source_path` into `destination_path` and returns the compressed size in bytes.

    Raises ExecutionError for anything that keeps the tool from producing a
    complete output file.
    """
    source = Path(source_path)
    destination = Path(destination_path)
    options = dict(options or {})

    try:
        kind = MediaKind(media_kind)
    except ValueError as exc:
        raise ExecutionError(f"Unsupported media kind: {media_kind}") from exc

    if not source.is_file():
        raise ExecutionError(f"Source file not found: {source}")

    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(f".{destination.stem}.partial{destination.suffix}")

    logger.info("Compressing %s (%s) -> %s", source.name, kind.value, destination)
    try:
        if kind == MediaKind.IMAGE:
            _compress_image(source, partial, options)
        elif kind == MediaKind.VIDEO:
            _run_tool(_video_command(source, partial, options), "Video")
        elif kind == MediaKind.AUDIO:
            _run_tool(_audio_command(source, partial, options), "Audio")
        else:
            _run_tool(_pdf_command(source, partial, options), "PDF")

        if not partial.is_file() or partial.stat().st_size == 0:
            raise ExecutionError("Compression produced no output")
        os.replace(partial, destination)
    finally:
        if partial.exists():
            partial.unlink()

    compressed_size = destination.stat().st_size
    logger.info("Compressed %s: %d -> %d bytes", source.name, source.stat().st_size, compressed_size)
    return compressed_size


# ------------------------------------------------------------------------------
# IMAGES (Pillow)
# ------------------------------------------------------------------------------

def _compress_image(source: Path, output: Path, options: Dict[str, Any]) -> None:
    quality = _int_option(options, "quality", DEFAULT_IMAGE_QUALITY)
    if not 1 <= quality <= 100:
        raise ExecutionError(f"Image quality must be between 1 and 100, got {quality}")

    format_name = str(options.get("format") or "jpeg").lower()
    if format_name not in IMAGE_FORMATS:
        raise ExecutionError(f"Unsupported image format: {format_name}")
    pil_format = IMAGE_FORMATS[format_name]

    width = _int_option(options, "width", None)
    height = _int_option(options, "height", None)

    try:
        with Image.open(source) as img:
            img.load()
            if width or height:
                # Fit inside the requested box, never enlarge.
                img.thumbnail((width or img.width, height or img.height))

            if pil_format == "JPEG":
                if img.mode not in ("RGB", "L"):
                    img = img.convert("RGB")
                img.save(output, format=pil_format, quality=quality, optimize=True)
            elif pil_format == "PNG":
                img.save(output, format=pil_format, optimize=True, compress_level=9)
            else:
                img.save(output, format=pil_format, quality=quality)
    except (UnidentifiedImageError, OSError) as exc:
        raise ExecutionError(f"Image compression failed: {exc}") from exc


# ------------------------------------------------------------------------------
# VIDEO / AUDIO (ffmpeg) and PDF (Ghostscript)
# ------------------------------------------------------------------------------

def _video_command(source: Path, output: Path, options: Dict[str, Any]) -> List[str]:
    crf = _int_option(options, "quality", DEFAULT_VIDEO_CRF)
    if not 0 <= crf <= 51:
        raise ExecutionError(f"Video quality (CRF) must be between 0 and 51, got {crf}")
    bitrate = str(options.get("bitrate") or DEFAULT_VIDEO_BITRATE)
    return [
        _resolve_binary(settings.ffmpeg_binary, "ffmpeg"),
        "-y",
        "-i", str(source),
        "-c:v", "libx264",
        "-crf", str(crf),
        "-b:v", bitrate,
        "-preset", "medium",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        str(output),
    ]


def _audio_command(source: Path, output: Path, options: Dict[str, Any]) -> List[str]:
    quality = _int_option(options, "quality", DEFAULT_AUDIO_QUALITY)
    if not 0 <= quality <= 9:
        raise ExecutionError(f"Audio quality must be between 0 and 9, got {quality}")
    bitrate = str(options.get("bitrate") or DEFAULT_AUDIO_BITRATE)
    return [
        _resolve_binary(settings.ffmpeg_binary, "ffmpeg"),
        "-y",
        "-i", str(source),
        "-c:a", "libmp3lame",
        "-b:a", bitrate,
        "-q:a", str(quality),
        str(output),
    ]


def _pdf_command(source: Path, output: Path, options: Dict[str, Any]) -> List[str]:
    preset = str(options.get("quality") or DEFAULT_PDF_PRESET).lower()
    if preset not in PDF_PRESETS:
        preset = DEFAULT_PDF_PRESET
    dpi = _int_option(options, "dpi", DEFAULT_PDF_DPI)
    return [
        _resolve_binary(settings.effective_ghostscript_binary(), "Ghostscript"),
        "-sDEVICE=pdfwrite",
        "-dCompatibilityLevel=1.4",
        f"-dPDFSETTINGS=/{preset}",
        "-dNOPAUSE",
        "-dQUIET",
        "-dBATCH",
        "-dDetectDuplicateImages=true",
        "-dCompressFonts=true",
        f"-r{dpi}",
        f"-sOutputFile={output}",
        str(source),
    ]


def _resolve_binary(name: str, label: str) -> str:
    found = shutil.which(name)
    if not found:
        raise ExecutionError(f"{label} executable not found: {name}")
    return found


def _run_tool(command: List[str], label: str) -> None:
    logger.debug("Running %s", " ".join(command))
    try:
        completed = subprocess.run(command, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise ExecutionError(f"{label} compression failed: {exc}") from exc
    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()[-STDERR_TAIL_CHARS:]
        raise ExecutionError(
            f"{label} compression failed (exit code {completed.returncode}): {stderr or 'no output'}"
        )


def _int_option(options: Dict[str, Any], key: str, default: Optional[int]) -> Optional[int]:
    value = options.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ExecutionError(f"Option '{key}' must be an integer, got {value!r}") from exc
