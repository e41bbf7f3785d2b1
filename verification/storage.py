import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from config import settings
from .errors import PersistenceError
from .utils import get_file_extension, is_image_file

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".jpg"

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}


@dataclass(frozen=True)
class StoredArtifact:
    path: str
    url: str
    size: int


class ArtifactStorage:
    """
    Stores captured artifacts under <root>/<request id>/<role>_<millis>.<ext>
    and resolves them to public URLs.
    """

    def __init__(self, root: str = settings.STORAGE_DIR, public_url: str = settings.STORAGE_PUBLIC_URL):
        self.root = root
        self.public_url = public_url.rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def _extension(self, filename: Optional[str], content_type: Optional[str]) -> str:
        # The stored bytes may have been re-encoded, so a known content type wins over the filename
        known = CONTENT_TYPE_EXTENSIONS.get((content_type or "").split(";")[0].strip().lower())
        if known:
            return known
        if filename and is_image_file(filename):
            return get_file_extension(filename)
        return DEFAULT_EXTENSION

    def save(
        self,
        request_id: int,
        role: str,
        content: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> StoredArtifact:
        # Millisecond timestamp keeps retakes from overwriting each other
        name = f"{role}_{int(time.time() * 1000)}{self._extension(filename, content_type)}"
        relpath = f"{request_id}/{name}"
        full_path = os.path.join(self.root, str(request_id), name)

        try:
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            with open(full_path, "wb") as f:
                f.write(content)
        except OSError as e:
            logger.error("Storage upload failed for %s: %s", relpath, e)
            raise PersistenceError(f"Storage upload failed: {e}") from e

        logger.info("Stored artifact %s (%d bytes)", relpath, len(content))
        return StoredArtifact(path=relpath, url=f"{self.public_url}/{relpath}", size=len(content))
