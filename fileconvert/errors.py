from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Request-level error carrying the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, **self.extra}


class ValidationError(ServiceError):
    status_code = 400


class UnsupportedConversionError(ValidationError):
    def __init__(self, input_format: str, output_format: str, supported_formats: list[str]):
        super().__init__(
            f"Conversion from {input_format} to {output_format} is not supported",
            supportedFormats=list(supported_formats),
        )
        self.supported_formats = list(supported_formats)


class NotFoundError(ServiceError):
    status_code = 404


class JobStateError(ServiceError):
    status_code = 400


class ConversionError(Exception):
    """An external tool or library call failed for good."""


class CancellationError(Exception):
    """The job's external process was killed on request."""
