"""Local image validation and preview utilities."""

import logging
import math
from pathlib import Path
from typing import Iterable, List, Union

from PIL import Image

from ..errors import ValidationError

logger = logging.getLogger(__name__)

ACCEPTED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB


def format_file_size(size: int) -> str:
    """Format a byte count as a human-readable string."""
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    return f"{round(size / 1024 ** i, 2):g} {units[i]}"


class ImageProcessor:
    """Checks images before upload and builds thumbnails for display."""

    @staticmethod
    def validate_image(path: Union[str, Path]) -> Path:
        """
        Check that a file can be uploaded as a reconstruction image.

        Args:
            path: Local file path

        Returns:
            The path as a Path

        Raises:
            ValidationError: missing file, unsupported extension, or oversize
        """
        path = Path(path)
        if not path.is_file():
            raise ValidationError(f"Image file not found: {path}")

        if path.suffix.lower() not in ACCEPTED_EXTENSIONS:
            raise ValidationError(
                f"Unsupported image format {path.suffix or '(none)'} for {path.name}; "
                f"expected one of {', '.join(sorted(ACCEPTED_EXTENSIONS))}"
            )

        size = path.stat().st_size
        if size > MAX_FILE_SIZE:
            raise ValidationError(
                f"{path.name} is {format_file_size(size)}, "
                f"larger than the {format_file_size(MAX_FILE_SIZE)} limit"
            )
        return path

    @classmethod
    def validate_batch(cls, paths: Iterable[Union[str, Path]]) -> List[Path]:
        """Validate every file of an upload batch; an empty batch is rejected."""
        validated = [cls.validate_image(p) for p in paths]
        if not validated:
            raise ValidationError("No images selected for upload")
        return validated

    @staticmethod
    def create_preview(path: Union[str, Path], size: int = 256) -> Image.Image:
        """Load an image and shrink it to fit a size x size box."""
        with Image.open(path) as img:
            preview = img.convert("RGB")
        preview.thumbnail((size, size))
        logger.debug(f"Created {preview.size[0]}x{preview.size[1]} preview for {path}")
        return preview
