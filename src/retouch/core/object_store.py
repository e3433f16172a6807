"""Local object storage for uploaded and public images.

Objects live under ``objects_dir`` in two trees:

- ``private/``: user uploads, addressed as ``/objects/<name>``.  These are
  never served without a signed URL or a signed proxy URL.
- ``public/``: shared assets such as reference-pose images, addressed as
  ``/public-objects/<name>`` and served to anyone.

The returned *reference* is the opaque identifier stored on work units.
Uploads are validated with Pillow so only real images are accepted, and the
stored extension and content type come from the decoded format rather than
from the client.
"""

from __future__ import annotations

import io
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from PIL import Image, UnidentifiedImageError

from .errors import ObjectNotFoundError, ValidationError

logger = logging.getLogger(__name__)

PRIVATE_PREFIX = "/objects/"
PUBLIC_PREFIX = "/public-objects/"

# Pillow format name -> (extension, content type)
_FORMATS: dict[str, tuple[str, str]] = {
    "PNG": ("png", "image/png"),
    "JPEG": ("jpg", "image/jpeg"),
    "WEBP": ("webp", "image/webp"),
    "GIF": ("gif", "image/gif"),
}

_CONTENT_TYPES = {ext: ctype for ext, ctype in _FORMATS.values()}
_CONTENT_TYPES["jpeg"] = "image/jpeg"


@dataclass(frozen=True)
class StoredObject:
    """A blob read back from the store."""

    reference: str
    path: Path
    content_type: str

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


@dataclass(frozen=True)
class ImageInfo:
    """Basic facts about a validated upload."""

    extension: str
    content_type: str
    width: int
    height: int


def inspect_image(data: bytes) -> ImageInfo:
    """Validate that ``data`` is a supported image and describe it.

    Raises:
        ValidationError: If the bytes are not a PNG, JPEG, WebP or GIF image.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
            width, height = image.size
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError(f"Upload is not a valid image: {e}") from e

    if image_format not in _FORMATS:
        raise ValidationError(f"Unsupported image format: {image_format}")

    extension, content_type = _FORMATS[image_format]
    return ImageInfo(extension=extension, content_type=content_type, width=width, height=height)


class LocalObjectStore:
    """Filesystem-backed object store.

    Args:
        root_dir: Directory containing ``private/`` and ``public/``.
        max_bytes: Largest accepted upload.
    """

    def __init__(self, root_dir: Path, max_bytes: int = 20 * 1024 * 1024) -> None:
        self.root_dir = Path(root_dir)
        self.private_dir = self.root_dir / "private"
        self.public_dir = self.root_dir / "public"
        self.private_dir.mkdir(parents=True, exist_ok=True)
        self.public_dir.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes

    def put(
        self,
        data: bytes,
        content_type: str | None = None,
        visibility: Literal["private", "public"] = "private",
        name: str | None = None,
    ) -> str:
        """Store an image and return its reference.

        Args:
            data: Raw image bytes.
            content_type: Client-declared content type; only logged, the
                decoded format wins.
            visibility: ``"private"`` (default) or ``"public"``.
            name: Object name for public objects; generated when omitted.

        Returns:
            ``/objects/uploads/<uuid>.<ext>`` or ``/public-objects/<name>``.

        Raises:
            ValidationError: Empty, oversized or non-image payload, or an
                unsafe object name.
        """
        if not data:
            raise ValidationError("Upload is empty")
        if len(data) > self.max_bytes:
            raise ValidationError(
                f"Upload is {len(data)} bytes, the limit is {self.max_bytes} bytes"
            )

        info = inspect_image(data)
        if content_type and content_type != info.content_type:
            logger.debug(f"Declared content type {content_type} differs from {info.content_type}")

        if visibility == "public":
            object_name = name or f"{uuid.uuid4()}.{info.extension}"
            base_dir, prefix = self.public_dir, PUBLIC_PREFIX
        else:
            object_name = f"uploads/{uuid.uuid4()}.{info.extension}"
            base_dir, prefix = self.private_dir, PRIVATE_PREFIX

        path = self._safe_path(base_dir, object_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

        reference = f"{prefix}{object_name}"
        logger.info(f"Stored {visibility} object {reference} ({info.width}x{info.height})")
        return reference

    def get(self, reference: str) -> StoredObject:
        """Look up an object by reference.

        Raises:
            ObjectNotFoundError: If the reference is unknown or unsafe.
        """
        if reference.startswith(PRIVATE_PREFIX):
            base_dir = self.private_dir
            object_name = reference[len(PRIVATE_PREFIX):]
        elif reference.startswith(PUBLIC_PREFIX):
            base_dir = self.public_dir
            object_name = reference[len(PUBLIC_PREFIX):]
        else:
            raise ObjectNotFoundError(f"Not a stored object reference: {reference}")

        try:
            path = self._safe_path(base_dir, object_name)
        except ValidationError as e:
            raise ObjectNotFoundError(str(e)) from e

        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {reference}")

        extension = path.suffix.lstrip(".").lower()
        content_type = _CONTENT_TYPES.get(extension, "application/octet-stream")
        return StoredObject(reference=reference, path=path, content_type=content_type)

    @staticmethod
    def _safe_path(base_dir: Path, object_name: str) -> Path:
        """Resolve ``object_name`` inside ``base_dir``, refusing traversal."""
        if not object_name or object_name.startswith("/"):
            raise ValidationError(f"Invalid object name: {object_name!r}")

        base_resolved = base_dir.resolve()
        path = (base_dir / object_name).resolve()
        if base_resolved not in path.parents:
            logger.warning(f"Path traversal attempt detected: {object_name}")
            raise ValidationError("Invalid object name: outside of storage directory")
        return path
