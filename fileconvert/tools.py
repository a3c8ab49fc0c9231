from __future__ import annotations

import functools
import logging
import os
import shutil
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

# package -> commands it provides
OPTIONAL_PACKAGES: dict[str, tuple[str, ...]] = {
    "ffmpeg": ("ffmpeg",),
    "poppler-utils": ("pdftoppm", "pdfimages", "pdfinfo"),
    "ghostscript": ("gs",),
    "imagemagick": ("convert",),
    "libreoffice": ("soffice",),
    "zip": ("zip",),
}

FFMPEG_SYSTEM_PATHS = (
    "/usr/bin/ffmpeg",
    "/usr/local/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
    "C:\\ffmpeg\\bin\\ffmpeg.exe",
)


@functools.lru_cache(maxsize=None)
def is_available(command: str) -> bool:
    if shutil.which(command):
        return True
    logger.info("Command %r is not available", command)
    return False


def clear_cache() -> None:
    is_available.cache_clear()


def resolve_ffmpeg_path() -> str | None:
    explicit = os.getenv("FFMPEG_PATH", "").strip()
    if explicit:
        if Path(explicit).exists():
            return explicit
        return None

    found = shutil.which("ffmpeg")
    if found:
        return found

    for candidate in FFMPEG_SYSTEM_PATHS:
        if Path(candidate).exists():
            return candidate

    return None


def check_dependencies() -> dict[str, list[str]]:
    missing_packages: list[str] = []
    missing_commands: list[str] = []
    installed: list[str] = []

    for package, commands in OPTIONAL_PACKAGES.items():
        missing = [cmd for cmd in commands if not is_available(cmd)]
        if missing:
            missing_packages.append(package)
            missing_commands.extend(missing)
        else:
            installed.append(package)

    return {
        "missing_packages": missing_packages,
        "missing_commands": missing_commands,
        "installed": installed,
    }


def installation_hint(missing_packages: list[str], platform: str | None = None) -> str:
    if not missing_packages:
        return ""

    platform = platform or sys.platform
    names = " ".join(missing_packages)
    if platform.startswith("linux"):
        return f"sudo apt install {names}  # or: sudo dnf install {names}"
    if platform == "darwin":
        return f"brew install {names}"
    if platform.startswith("win"):
        return "choco install " + " ".join(pkg.replace("-", "") for pkg in missing_packages)
    return f"Install: {names}"


def get_diagnostics() -> dict:
    report = check_dependencies()
    ffmpeg = resolve_ffmpeg_path()
    return {
        "ffmpeg": {"ok": ffmpeg is not None, "path": ffmpeg},
        "installed": report["installed"],
        "missing_packages": report["missing_packages"],
        "missing_commands": report["missing_commands"],
        "install_hint": installation_hint(report["missing_packages"]),
    }
