import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np
import pillow_heif
from PIL import Image, ImageOps, UnidentifiedImageError
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError

from config import settings
from .errors import CaptureError

pillow_heif.register_heif_opener()

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"

DECODE_ERRORS = (
    UnidentifiedImageError,
    OSError,
    ValueError,
    Image.DecompressionBombError,
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFSyntaxError,
)


@dataclass(frozen=True)
class DerivedImage:
    """One derivation of a captured photo."""

    content: bytes
    content_type: str
    width: int = 0
    height: int = 0
    # False when the input could not be decoded and is passed through as-is
    transformed: bool = True


@dataclass(frozen=True)
class CapturePair:
    upload: DerivedImage
    ocr: DerivedImage


def is_pdf(data: bytes) -> bool:
    return data[:len(PDF_MAGIC)] == PDF_MAGIC


def open_image(data: bytes) -> Image.Image:
    """
    Decode image bytes (JPEG / PNG / HEIC / ...) or the first page of a PDF.
    A fresh Image is returned on every call so derivations never share rasters.
    """
    if is_pdf(data):
        pages = convert_from_bytes(data, dpi=300, first_page=1, last_page=1)
        if not pages:
            raise ValueError("PDF has no pages")
        return pages[0]

    img = Image.open(io.BytesIO(data))
    img.load()
    return ImageOps.exif_transpose(img)


def _source_format(data: bytes) -> str:
    with Image.open(io.BytesIO(data)) as img:
        return img.format or ""


def _scaled_size(width: int, height: int, scale: float) -> Tuple[int, int]:
    return max(1, round(width * scale)), max(1, round(height * scale))


def _passthrough(data: bytes) -> DerivedImage:
    return DerivedImage(content=data, content_type="application/octet-stream", transformed=False)


def derive_upload_copy(
    data: bytes,
    max_edge: int = settings.UPLOAD_MAX_EDGE,
    quality: int = settings.UPLOAD_JPEG_QUALITY,
) -> DerivedImage:
    """
    Produce the copy that gets stored and reviewed.

    Images whose longest edge is within max_edge are returned byte-for-byte.
    Larger ones are scaled down proportionally and re-encoded as JPEG, in full
    colour.
    """
    try:
        img = open_image(data)
    except DECODE_ERRORS as e:
        logger.warning("Upload derivation could not decode input, keeping original: %s", e)
        return _passthrough(data)

    width, height = img.size
    longest = max(width, height)

    if longest <= max_edge and not is_pdf(data):
        mime = Image.MIME.get(_source_format(data), "application/octet-stream")
        return DerivedImage(content=data, content_type=mime, width=width, height=height, transformed=False)

    scale = min(1.0, max_edge / longest)
    size = _scaled_size(width, height, scale)
    resized = img.convert("RGB")
    if size != resized.size:
        resized = resized.resize(size, Image.LANCZOS)

    out = io.BytesIO()
    resized.save(out, "JPEG", quality=quality)
    return DerivedImage(content=out.getvalue(), content_type="image/jpeg", width=size[0], height=size[1])


def luminance(rgb: np.ndarray) -> np.ndarray:
    """Greyscale via 0.299R + 0.587G + 0.114B, as float."""
    rgb = rgb.astype(np.float64)
    return 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]


def stretch_contrast(
    grey: np.ndarray,
    midpoint: float = settings.OCR_CONTRAST_MIDPOINT,
    slope: float = settings.OCR_CONTRAST_SLOPE,
) -> np.ndarray:
    """Linear contrast stretch around midpoint, clamped to [0, 255]."""
    stretched = (grey - midpoint) * slope + midpoint
    return np.clip(np.rint(stretched), 0, 255).astype(np.uint8)


def to_ocr_raster(
    rgb: np.ndarray,
    target_edge: int = settings.OCR_TARGET_EDGE,
    midpoint: float = settings.OCR_CONTRAST_MIDPOINT,
    slope: float = settings.OCR_CONTRAST_SLOPE,
) -> np.ndarray:
    """Upscale (never downscale) to target_edge, then greyscale + contrast."""
    height, width = rgb.shape[:2]
    scale = max(1.0, target_edge / max(width, height))
    if scale > 1.0:
        rgb = cv2.resize(rgb, _scaled_size(width, height, scale), interpolation=cv2.INTER_CUBIC)
    return stretch_contrast(luminance(rgb), midpoint, slope)


def derive_ocr_copy(
    data: bytes,
    target_edge: int = settings.OCR_TARGET_EDGE,
    quality: int = settings.OCR_JPEG_QUALITY,
) -> DerivedImage:
    """
    Produce the transient raster fed to recognition. Never stored or shown
    as the captured image.
    """
    try:
        img = open_image(data)
    except DECODE_ERRORS as e:
        logger.warning("OCR derivation could not decode input, keeping original: %s", e)
        return _passthrough(data)

    raster = to_ocr_raster(np.asarray(img.convert("RGB")), target_edge)
    ok, encoded = cv2.imencode(".jpg", raster, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        logger.warning("OCR derivation could not encode raster, keeping original")
        return _passthrough(data)

    height, width = raster.shape[:2]
    return DerivedImage(content=encoded.tobytes(), content_type="image/jpeg", width=width, height=height)


async def prepare_capture(data: bytes) -> CapturePair:
    """
    Run both derivations concurrently. Each decodes the source on its own,
    and the results are combined only once both have finished.
    """
    if not data:
        raise CaptureError("The selected file is empty. Please choose another image.")

    upload, ocr = await asyncio.gather(
        asyncio.to_thread(derive_upload_copy, data),
        asyncio.to_thread(derive_ocr_copy, data),
    )
    return CapturePair(upload=upload, ocr=ocr)
