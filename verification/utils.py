import base64
import binascii
import os
from urllib.parse import urlparse

import requests

from config import settings
from .errors import InvalidInput, RemoteFetchError

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.tiff', '.webp', '.heic', '.heif', '.pdf'}


def download_image_from_url(url: str, timeout: float = settings.HTTP_TIMEOUT) -> bytes:
    """
    Download an image so it can be processed server-side

    Args:
        url: Public image URL
        timeout: Request timeout in seconds

    Returns:
        Raw image bytes
    """
    if not is_valid_url(url):
        raise InvalidInput(f"Invalid image URL: {url}")
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise RemoteFetchError(f"Failed to download image from {url}: {e}") from e
    return response.content


def decode_base64_image(data: str) -> bytes:
    """Decode a base64 payload, with or without a data: URL prefix"""
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInput("Image is not valid base64") from e


def is_valid_url(url: str) -> bool:
    """Check if string is a valid http(s) URL"""
    try:
        result = urlparse(url)
    except ValueError:
        return False
    return result.scheme in ("http", "https") and bool(result.netloc)


def get_file_extension(filename: str) -> str:
    """Get file extension from filename"""
    return os.path.splitext(filename)[1].lower()


def is_image_file(filename: str) -> bool:
    """Check if file has an accepted image extension"""
    return get_file_extension(filename) in IMAGE_EXTENSIONS
