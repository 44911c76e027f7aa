"""
Figure image storage.

Figure images extracted by the parsing service live either under
FIGURE_ROOT (storage_path relative to it) or behind an image_url.
Everything handed to the vision oracle is re-encoded as PNG first, so
undecodable or exotic images fail here and not at the oracle.
"""
import logging
from pathlib import Path
from typing import Optional

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 20 * 1024 * 1024  # 20 MB


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class ImageDecodeError(StorageError):
    """Image bytes could not be decoded."""
    pass


class FigureStorage:
    """
    Read-only access to extracted figure images.

    Files are stored at: {FIGURE_ROOT}/{storage_path}
    """

    def __init__(self, root: Optional[Path] = None, timeout: float = 30.0):
        self.root = Path(root or getattr(settings, 'FIGURE_ROOT', '/data/figures'))
        self.timeout = timeout

    def get_path(self, storage_path: str) -> Path:
        """
        Resolve a storage path under the root.

        Raises:
            StorageError: If the path escapes the root
        """
        root = self.root.resolve()
        path = (root / storage_path).resolve()
        if root != path and root not in path.parents:
            raise StorageError(f"Storage path escapes figure root: {storage_path}")
        return path

    def exists(self, storage_path: str) -> bool:
        return self.get_path(storage_path).exists()

    def read(self, storage_path: str) -> bytes:
        path = self.get_path(storage_path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read figure {storage_path}: {e}")
            raise StorageError(f"Failed to read figure: {e}")
        if len(data) > MAX_IMAGE_BYTES:
            raise StorageError(f"Figure too large: {len(data)} bytes")
        return data

    def download(self, url: str) -> bytes:
        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                response = client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StorageError(f"Image download failed: {e.response.status_code}")
        except httpx.RequestError as e:
            raise StorageError(f"Image download failed: {e}")

        if len(response.content) > MAX_IMAGE_BYTES:
            raise StorageError(f"Figure too large: {len(response.content)} bytes")
        return response.content

    def load(self, storage_path: str = '', image_url: str = '') -> bytes:
        """Load image bytes from local storage, falling back to the URL."""
        if storage_path and self.exists(storage_path):
            return self.read(storage_path)
        if image_url:
            return self.download(image_url)
        raise StorageError(f"Figure image not found: {storage_path or '(no path)'}")


def normalize_image(data: bytes) -> bytes:
    """
    Decode image bytes and re-encode them as PNG.

    CMYK and other non-RGB colorspaces are converted to RGB.

    Raises:
        ImageDecodeError: If the bytes are not a decodable image
    """
    if not data:
        raise ImageDecodeError("Empty image data")

    import fitz  # PyMuPDF

    try:
        pix = fitz.Pixmap(data)
        if pix.colorspace is not None and pix.colorspace.n > 3:
            pix = fitz.Pixmap(fitz.csRGB, pix)
        if pix.width == 0 or pix.height == 0:
            raise ImageDecodeError("Image has no pixels")
        return pix.tobytes("png")
    except (RuntimeError, ValueError, TypeError) as e:
        raise ImageDecodeError(f"Cannot decode image: {e}")


# Singleton instance
_storage: Optional[FigureStorage] = None


def get_storage() -> FigureStorage:
    """Get the figure storage instance (lazy initialization)."""
    global _storage
    if _storage is None:
        _storage = FigureStorage()
    return _storage
