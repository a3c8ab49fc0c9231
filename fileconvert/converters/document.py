"""PDF and DOCX handling on top of whichever external tools are installed.

Every conversion ends with *some* output file: when the preferred tools are
missing or fail, pages degrade to a placeholder image instead of failing
the job.
"""

from __future__ import annotations

import base64
import logging
import re
import shutil
import subprocess
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from PIL import Image, ImageDraw

from .. import tools
from ..errors import ConversionError
from ..formats import detect_format
from ..processes import ProcessRunner
from . import ProgressCallback, output_path_for, report
from .image import PIL_FORMATS, save_image

logger = logging.getLogger(__name__)

RASTER_FORMATS = ("jpg", "jpeg", "png", "webp")
PLACEHOLDER_SIZE = (800, 1000)

# tiny images used when nothing else can produce a file (png and webp are 1x1, jpg is a 16x16 baseline JFIF)
STATIC_IMAGES = {
    "png": base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
    ),
    "jpg": base64.b64decode(
        "/9j/4AAQSkZJRgABAQEAAQABAAD/2wBDAAMCAgICAgMCAgIDAwMDBAYEBAQEBAgGBgUGCQgKCgkICQkKDA8MCgsOCwkJDREN"
        "Dg8QEBEQCgwSExIQEw8QEBD/2wBDAQMDAwQDBAgEBAgQCwkLEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQ"
        "EBAQEBAQEBAQEBAQEBD/wAARCAAQABADASIAAhEBAxEB/8QAFgABAQEAAAAAAAAAAAAAAAAABwQF/8QAJBAAAQQBBAICAwAA"
        "AAAAAAAAAQIDBAYFBwgSExEiABQJMTL/xAAVAQEBAAAAAAAAAAAAAAAAAAAABv/EACMRAAECBQMFAAAAAAAAAAAAAAECEQME"
        "BQYhABIxFRZhgeH/2gAMAwEAAhEDEQA/ABSm0mobc8HmExLUlRzzEWPkJWW+ulrsaUVAseUgslSlH9LKuPryIKuWPZdskzXm"
        "m3fX5m2nF4GlVxx/HOpx4ks51+MiU/Iaad7UcUo4tILoS4kqcWkezS0hO/HvuRp0rO6hWnWO1UisZVuFi4GFeyEpmGepa5S5"
        "SWVPuciFKRFLgSrwetnyPIB+Vb4N9mKhQMzo5po9XLdDs9d6ZVix2VEhiL9kuNPxw2gEKcDQ/rs8AuA8VAe0vdl7VOYn+27f"
        "lGAUgmITjbhSmCg3BYlyeWDkMolvw4KOp1KM6iCNvngZHwetf//Z"
    ),
    "webp": base64.b64decode("UklGRiIAAABXRUJQVlA4IBYAAAAwAQCdASoBAAEADsD+JaQAA3AAAAAA"),
}
STATIC_IMAGES["jpeg"] = STATIC_IMAGES["jpg"]


def _run_tool(runner: ProcessRunner, cmd: list[str], cwd=None) -> subprocess.CompletedProcess:
    try:
        result = runner.run(cmd, cwd=cwd)
    except OSError as exc:
        raise ConversionError(f"{cmd[0]} could not be started: {exc}") from exc
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()[:600]
        raise ConversionError(f"{cmd[0]} exited with code {result.returncode}: {detail}")
    return result


def _render_with_pdftoppm(runner: ProcessRunner, pdf: Path, page: int, work_dir: Path, dpi: int) -> Path:
    prefix = work_dir / "pdftoppm"
    _run_tool(
        runner,
        ["pdftoppm", "-f", str(page), "-l", str(page), "-r", str(dpi), "-png", "-singlefile", str(pdf), str(prefix)],
    )
    return prefix.with_suffix(".png")


def _render_with_ghostscript(runner: ProcessRunner, pdf: Path, page: int, work_dir: Path, dpi: int) -> Path:
    target = work_dir / "gs.png"
    _run_tool(
        runner,
        [
            "gs",
            "-q",
            "-dNOPAUSE",
            "-dBATCH",
            "-dSAFER",
            "-sDEVICE=png16m",
            f"-r{dpi}",
            f"-dFirstPage={page}",
            f"-dLastPage={page}",
            f"-sOutputFile={target}",
            str(pdf),
        ],
    )
    return target


def _extract_with_pdfimages(runner: ProcessRunner, pdf: Path, page: int, work_dir: Path, dpi: int) -> Path:
    prefix = work_dir / "pdfimages"
    _run_tool(runner, ["pdfimages", "-f", str(page), "-l", str(page), "-png", str(pdf), str(prefix)])
    extracted = sorted(work_dir.glob("pdfimages-*.png"))
    if not extracted:
        raise ConversionError(f"pdfimages found no embedded images on page {page}")
    return extracted[0]


@dataclass(frozen=True)
class PageStrategy:
    name: str
    command: str
    render: Callable[[ProcessRunner, Path, int, Path, int], Path]


PAGE_STRATEGIES: tuple[PageStrategy, ...] = (
    PageStrategy("pdftoppm", "pdftoppm", _render_with_pdftoppm),
    PageStrategy("ghostscript", "gs", _render_with_ghostscript),
    PageStrategy("pdfimages", "pdfimages", _extract_with_pdfimages),
)


def _normalize_raster(raster: Path, output_path: Path, output_format: str) -> None:
    if not raster.exists() or raster.stat().st_size == 0:
        raise ConversionError(f"{raster.name} is missing or empty")
    try:
        with Image.open(raster) as image:
            save_image(image.copy(), output_path, output_format)
    except OSError as exc:
        raise ConversionError(f"Cannot convert {raster.name} to {output_format}: {exc}") from exc


def write_placeholder(runner: ProcessRunner, output_path: Path, output_format: str, label: str) -> str:
    """Produce a stand-in image and return the name of the method that made it."""
    width, height = PLACEHOLDER_SIZE

    if tools.is_available("convert"):
        try:
            _run_tool(
                runner,
                [
                    "convert",
                    "-size",
                    f"{width}x{height}",
                    "xc:white",
                    "-gravity",
                    "center",
                    "-pointsize",
                    "36",
                    "-annotate",
                    "0",
                    label,
                    f"{PIL_FORMATS[output_format]}:{output_path}",
                ],
            )
            if output_path.exists() and output_path.stat().st_size > 0:
                return "imagemagick"
        except ConversionError as exc:
            logger.warning("ImageMagick placeholder failed: %s", exc)

    try:
        image = Image.new("RGB", (width, height), "white")
        ImageDraw.Draw(image).text((40, height // 2), label, fill="black")
        save_image(image, output_path, output_format)
        return "pillow"
    except (OSError, KeyError, ConversionError) as exc:
        logger.warning("Pillow placeholder failed: %s", exc)

    output_path.write_bytes(STATIC_IMAGES[output_format])
    return "static"


def write_placeholder_pdf(output_path: Path, label: str) -> None:
    width, height = PLACEHOLDER_SIZE
    image = Image.new("RGB", (width, height), "white")
    ImageDraw.Draw(image).text((40, height // 2), label, fill="black")
    image.save(output_path, format="PDF")


def render_page(
    runner: ProcessRunner,
    pdf: Path,
    page: int,
    output_path: Path,
    output_format: str,
    dpi: int = 150,
    strategies: tuple[PageStrategy, ...] = PAGE_STRATEGIES,
) -> str:
    """Render one page to ``output_path``; returns the strategy that succeeded."""
    runner.check_cancelled()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    work_dir = output_path.parent / f".page-{page:03d}"

    try:
        for strategy in strategies:
            if not tools.is_available(strategy.command):
                continue
            work_dir.mkdir(parents=True, exist_ok=True)
            try:
                raster = strategy.render(runner, pdf, page, work_dir, dpi)
                _normalize_raster(raster, output_path, output_format)
                return strategy.name
            except ConversionError as exc:
                logger.warning("Page %s: %s failed: %s", page, strategy.name, exc)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    runner.check_cancelled()
    method = write_placeholder(runner, output_path, output_format, f"{pdf.stem} - page {page}")
    logger.warning("Page %s: no renderer succeeded, wrote %s placeholder", page, method)
    return f"placeholder:{method}"


def count_pages(runner: ProcessRunner, pdf: Path) -> int:
    if not tools.is_available("pdfinfo"):
        return 1
    try:
        result = _run_tool(runner, ["pdfinfo", str(pdf)])
    except ConversionError as exc:
        logger.warning("pdfinfo failed, assuming one page: %s", exc)
        return 1
    match = re.search(r"^Pages:\s+(\d+)", result.stdout or "", re.MULTILINE)
    return max(1, int(match.group(1))) if match else 1


def archive_pages(runner: ProcessRunner, pages: list[Path], archive_path: Path) -> str:
    archive_path.unlink(missing_ok=True)
    if tools.is_available("zip"):
        try:
            _run_tool(runner, ["zip", "-j", "-q", str(archive_path), *[str(p) for p in pages]])
            if archive_path.exists():
                return "zip"
        except ConversionError as exc:
            logger.warning("zip failed, packaging pages directly: %s", exc)

    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_STORED) as bundle:
        for page in pages:
            bundle.write(page, arcname=page.name)
    return "zipfile"


def docx_to_pdf(runner: ProcessRunner, docx: Path, work_dir: Path) -> Path | None:
    if not tools.is_available("soffice"):
        return None
    try:
        _run_tool(runner, ["soffice", "--headless", "--convert-to", "pdf", "--outdir", str(work_dir), str(docx)])
    except ConversionError as exc:
        logger.warning("LibreOffice conversion failed: %s", exc)
        return None
    pdf = work_dir / f"{docx.stem}.pdf"
    return pdf if pdf.exists() else None


def _pdf_to_images(
    runner: ProcessRunner,
    pdf: Path,
    stem: str,
    output_format: str,
    output_dir: Path,
    dpi: int,
    page_workers: int,
    progress_cb: ProgressCallback | None,
) -> Path:
    pages = count_pages(runner, pdf)
    report(progress_cb, 20)

    if pages == 1:
        output_path = output_dir / f"{stem}.{output_format}"
        render_page(runner, pdf, 1, output_path, output_format, dpi)
        return output_path

    pages_dir = output_dir / f"{stem}_pages"
    targets = {n: pages_dir / f"page-{n:03d}.{output_format}" for n in range(1, pages + 1)}
    done = 0
    with ThreadPoolExecutor(max_workers=max(1, min(page_workers, pages))) as pool:
        futures = [
            pool.submit(render_page, runner, pdf, n, target, output_format, dpi) for n, target in targets.items()
        ]
        for future in as_completed(futures):
            future.result()
            done += 1
            report(progress_cb, 20 + round(done / pages * 70))

    archive_path = output_dir / f"{stem}_pages.zip"
    method = archive_pages(runner, list(targets.values()), archive_path)
    logger.info("Archived %s pages into %s with %s", pages, archive_path.name, method)
    shutil.rmtree(pages_dir, ignore_errors=True)
    return archive_path


def convert_document(
    input_path: Path,
    output_format: str,
    output_dir: Path,
    options: dict | None = None,
    progress_cb: ProgressCallback | None = None,
    runner: ProcessRunner | None = None,
    dpi: int = 150,
    page_workers: int = 4,
) -> Path:
    options = options or {}
    runner = runner or ProcessRunner.detached()
    input_path = Path(input_path)
    source_format = detect_format(input_path)
    dpi = int(options.get("dpi") or dpi)
    report(progress_cb, 10)

    if source_format == output_format:
        output_path = output_path_for(input_path, output_dir, output_format)
        shutil.copyfile(input_path, output_path)
        report(progress_cb, 100)
        return output_path

    if output_format != "pdf" and output_format not in RASTER_FORMATS:
        raise ConversionError(f"Unsupported output format: {output_format}")

    output_dir.mkdir(parents=True, exist_ok=True)
    work_dir = output_dir / ".work"
    work_dir.mkdir(parents=True, exist_ok=True)
    try:
        pdf = input_path
        if source_format == "docx":
            pdf = docx_to_pdf(runner, input_path, work_dir)
            if output_format == "pdf":
                output_path = output_path_for(input_path, output_dir, "pdf")
                if pdf is not None:
                    shutil.move(str(pdf), output_path)
                else:
                    write_placeholder_pdf(output_path, input_path.name)
                report(progress_cb, 100)
                return output_path
            if pdf is None:
                output_path = output_path_for(input_path, output_dir, output_format)
                write_placeholder(runner, output_path, output_format, input_path.name)
                report(progress_cb, 100)
                return output_path
        elif source_format != "pdf":
            raise ConversionError(f"Unsupported document format: {source_format}")

        output_path = _pdf_to_images(
            runner, pdf, input_path.stem, output_format, output_dir, dpi, page_workers, progress_cb
        )
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    report(progress_cb, 100)
    return output_path
