"""Pre-upload warnings for large or unusual files."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import TYPE_CHECKING

from lessonup.core.config import MIB

if TYPE_CHECKING:
    from lessonup.client.upload.task import SourceFile

LARGE_FILE_MB = 20
COMPRESS_PICTURES_MB = 25
VERY_LARGE_FILE_MB = 60


class UploadKind(str, Enum):
    """Coarse file kind used to pick warnings."""

    PPTX = "pptx"
    PDF = "pdf"
    ZIP = "zip"
    IMAGE = "image"
    OTHER = "other"


@dataclass(frozen=True)
class PreflightReport:
    """Result of preflight_file()."""

    kind: UploadKind
    size_mb: float
    warnings: list[str] = field(default_factory=list)


def get_upload_kind(name: str, content_type: str | None = None) -> UploadKind:
    """Classify a file by extension, then by MIME type."""
    ext = PurePath(name).suffix.lower().lstrip(".")
    if ext in ("pptx", "pdf", "zip"):
        return UploadKind(ext)
    if (content_type or "").startswith("image/"):
        return UploadKind.IMAGE
    return UploadKind.OTHER


def preflight_file(source: SourceFile) -> PreflightReport:
    """Collect warnings to show before uploading source."""
    size_mb = source.size / MIB
    kind = get_upload_kind(source.name, source.content_type)

    warnings = []
    if size_mb > LARGE_FILE_MB:
        warnings.append(
            f"Large file ({size_mb:.1f} MB). Upload will be slower on typical home upload speeds."
        )
    if kind == UploadKind.PPTX and size_mb > COMPRESS_PICTURES_MB:
        warnings.append(
            "Tip: PowerPoint > File > Compress Pictures (Web/150 ppi) can shrink this a lot."
        )
    if kind in (UploadKind.PPTX, UploadKind.PDF, UploadKind.ZIP) and size_mb > VERY_LARGE_FILE_MB:
        warnings.append("Very large file. Upload ONE file at a time for best speed.")
    if kind == UploadKind.ZIP:
        warnings.append("ZIP isn't faster unless it contains many small assets.")

    return PreflightReport(kind=kind, size_mb=size_mb, warnings=warnings)
