from __future__ import annotations

import functools
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from ..formats import DOCUMENT, IMAGE, VIDEO

if TYPE_CHECKING:
    from ..config import Settings

ProgressCallback = Callable[[int], None]
Converter = Callable[..., Path]


def output_path_for(input_path: Path, output_dir: Path, output_format: str, suffix: str = "") -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir / f"{input_path.stem}{suffix}.{output_format}"


def report(progress_cb: ProgressCallback | None, value: int) -> None:
    if progress_cb:
        progress_cb(value)


def default_converters(settings: "Settings | None" = None) -> dict[str, Converter]:
    from .document import convert_document
    from .image import convert_image
    from .video import convert_video

    document = convert_document
    if settings is not None:
        document = functools.partial(convert_document, dpi=settings.pdf_dpi, page_workers=settings.page_workers)
    return {VIDEO: convert_video, IMAGE: convert_image, DOCUMENT: document}
