from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_DIR = PACKAGE_DIR.parent


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    return max(int(os.getenv(name, str(default))), minimum)


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    return Path(raw) if raw else default


@dataclass
class Settings:
    workspace_dir: Path
    upload_dir: Path
    output_dir: Path
    max_workers: int = 4
    max_upload_mb: int = 1024
    job_retention_hours: int = 24
    cleanup_interval_seconds: int = 3600
    keepalive_seconds: float = 30.0
    pdf_dpi: int = 150
    page_workers: int = 4

    @classmethod
    def from_env(cls) -> "Settings":
        workspace = _env_path("FILECONVERT_WORKSPACE_DIR", PROJECT_DIR / "workspace")
        return cls(
            workspace_dir=workspace,
            upload_dir=_env_path("FILECONVERT_UPLOAD_DIR", workspace / "uploads"),
            output_dir=_env_path("FILECONVERT_OUTPUT_DIR", workspace / "output"),
            max_workers=_env_int("FILECONVERT_MAX_WORKERS", 4, minimum=1),
            max_upload_mb=_env_int("FILECONVERT_MAX_UPLOAD_MB", 1024, minimum=1),
            job_retention_hours=_env_int("FILECONVERT_JOB_RETENTION_HOURS", 24),
            cleanup_interval_seconds=_env_int("FILECONVERT_CLEANUP_INTERVAL_SECONDS", 3600, minimum=1),
            keepalive_seconds=float(os.getenv("FILECONVERT_KEEPALIVE_SECONDS", "30")),
            pdf_dpi=_env_int("FILECONVERT_PDF_DPI", 150, minimum=36),
            page_workers=_env_int("FILECONVERT_PAGE_WORKERS", 4, minimum=1),
        )

    @classmethod
    def for_workspace(cls, workspace: Path, **overrides) -> "Settings":
        """Settings rooted at one directory; used by tests and embedders."""
        return cls(
            workspace_dir=workspace,
            upload_dir=workspace / "uploads",
            output_dir=workspace / "output",
            **overrides,
        )

    @property
    def upload_limit_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    def ensure_dirs(self) -> None:
        for path in (self.workspace_dir, self.upload_dir, self.output_dir):
            path.mkdir(parents=True, exist_ok=True)
        self.upload_dir = self.upload_dir.resolve()
        self.output_dir = self.output_dir.resolve()
