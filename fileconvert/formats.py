from __future__ import annotations

from pathlib import Path

VIDEO = "video"
IMAGE = "image"
DOCUMENT = "document"

# family -> (input formats, output formats)
FAMILIES: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    VIDEO: (
        ("mp4", "mov", "avi", "mkv", "wmv", "webm"),
        ("mp4", "mov", "avi", "mkv", "webm"),
    ),
    IMAGE: (
        ("jpg", "jpeg", "png", "gif", "webp", "tiff", "avif"),
        ("jpg", "jpeg", "png", "webp", "avif", "tiff"),
    ),
    DOCUMENT: (
        ("pdf", "docx"),
        ("pdf", "jpg", "jpeg", "png", "webp"),
    ),
}

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "avi": "video/x-msvideo",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "wmv": "video/x-ms-wmv",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "tiff": "image/tiff",
    "avif": "image/avif",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "zip": "application/zip",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
}


def _normalize(fmt: str | None) -> str:
    return (fmt or "").strip().lower().lstrip(".")


def detect_format(path: str | Path) -> str:
    return Path(str(path)).suffix.lower().lstrip(".")


def supported_input_formats() -> list[str]:
    seen: list[str] = []
    for inputs, _ in FAMILIES.values():
        seen.extend(fmt for fmt in inputs if fmt not in seen)
    return seen


def supported_output_formats(input_format: str) -> list[str]:
    fmt = _normalize(input_format)
    seen: list[str] = []
    for inputs, outputs in FAMILIES.values():
        if fmt in inputs:
            seen.extend(out for out in outputs if out not in seen)
    return seen


def is_supported(input_format: str, output_format: str) -> bool:
    src, dst = _normalize(input_format), _normalize(output_format)
    return any(src in inputs and dst in outputs for inputs, outputs in FAMILIES.values())


def family_for(input_format: str) -> str | None:
    fmt = _normalize(input_format)
    for family, (inputs, _) in FAMILIES.items():
        if fmt in inputs:
            return family
    return None


def content_type_for(path_or_format: str | Path) -> str:
    raw = str(path_or_format)
    fmt = detect_format(raw) or _normalize(raw)
    return CONTENT_TYPES.get(fmt, "application/octet-stream")
