from __future__ import annotations

import logging
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import ConversionError
from ..processes import ProcessRunner
from . import ProgressCallback, output_path_for, report

logger = logging.getLogger(__name__)

PIL_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "avif": "AVIF",
    "tiff": "TIFF",
}
QUALITY_FORMATS = ("jpg", "jpeg", "webp", "avif")
FIT_MODES = ("contain", "cover", "fill", "inside", "outside")


def _positive_int(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConversionError(f"Invalid dimension: {value}") from None
    if number <= 0:
        raise ConversionError(f"Invalid dimension: {value}")
    return number


def resize_image(
    image: Image.Image,
    width: int | None,
    height: int | None,
    fit: str = "contain",
    transparent: bool = True,
) -> Image.Image:
    if fit not in FIT_MODES:
        raise ConversionError(f"Unsupported fit mode: {fit}")
    src_w, src_h = image.size
    if width is None:
        width = max(1, round(src_w * height / src_h))
    if height is None:
        height = max(1, round(src_h * width / src_w))

    if fit == "fill":
        return image.resize((width, height))
    if fit == "cover":
        return ImageOps.fit(image, (width, height))
    if fit == "outside":
        scale = max(width / src_w, height / src_h)
        return image.resize((max(1, round(src_w * scale)), max(1, round(src_h * scale))))
    if fit == "inside":
        return ImageOps.contain(image, (width, height))
    # contain letterboxes to exactly width x height
    if transparent:
        return ImageOps.pad(image.convert("RGBA"), (width, height), color=(0, 0, 0, 0))
    return ImageOps.pad(image.convert("RGB"), (width, height), color=(255, 255, 255))


def _prepare_mode(image: Image.Image, pil_format: str) -> Image.Image:
    if pil_format == "JPEG" and image.mode not in ("RGB", "L"):
        if image.mode in ("RGBA", "LA", "P"):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        return image.convert("RGB")
    if image.mode == "P":
        return image.convert("RGBA")
    return image


def save_image(image: Image.Image, output_path: Path, output_format: str, quality: int | None = None) -> None:
    pil_format = PIL_FORMATS.get(output_format)
    if pil_format is None:
        raise ConversionError(f"Unsupported output format: {output_format}")
    params = {}
    if quality and output_format in QUALITY_FORMATS:
        params["quality"] = int(quality)
    _prepare_mode(image, pil_format).save(output_path, format=pil_format, **params)


def convert_image(
    input_path: Path,
    output_format: str,
    output_dir: Path,
    options: dict | None = None,
    progress_cb: ProgressCallback | None = None,
    runner: ProcessRunner | None = None,
) -> Path:
    options = options or {}
    report(progress_cb, 10)

    output_path = output_path_for(Path(input_path), output_dir, output_format)
    try:
        with Image.open(input_path) as source:
            source.seek(0)
            image = source.copy()
    except (OSError, UnidentifiedImageError) as exc:
        raise ConversionError(f"Cannot read image {Path(input_path).name}: {exc}") from exc

    width = _positive_int(options.get("width"))
    height = _positive_int(options.get("height"))
    if width or height:
        fit = str(options.get("fit") or "contain")
        image = resize_image(image, width, height, fit, transparent=PIL_FORMATS.get(output_format) != "JPEG")

    if runner:
        runner.check_cancelled()
    report(progress_cb, 50)

    try:
        save_image(image, output_path, output_format, options.get("quality"))
    except (OSError, ValueError, KeyError) as exc:
        output_path.unlink(missing_ok=True)
        raise ConversionError(f"Cannot write {output_format} image: {exc}") from exc

    if runner:
        runner.check_cancelled()
    report(progress_cb, 100)
    return output_path
