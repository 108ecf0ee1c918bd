# chatprojects/utils/images.py
from __future__ import annotations

import base64
import binascii
import re
from typing import Any, Dict, List, Optional, Tuple

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

_DATA_URL_RE = re.compile(r"^data:(image/[a-z]+);base64,(.+)$", re.IGNORECASE | re.DOTALL)
_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9+/=:;,]")


class ImageValidationError(ValueError):
    pass


def parse_data_url(data_url: str) -> Optional[Tuple[str, str]]:
    """Split a base64 data URL into (media_type, payload); None when it does not match."""
    m = _DATA_URL_RE.match(data_url or "")
    if not m:
        return None
    return m.group(1).lower(), m.group(2)


def validate_image(image: Dict[str, Any], max_mb: int = 10) -> Dict[str, str]:
    """Validate one ``{dataUrl, name, type}`` attachment and return its cleaned form."""
    raw = image.get("dataUrl") if isinstance(image, dict) else None
    if not isinstance(raw, str) or not raw:
        raise ImageValidationError("Invalid image data format.")
    data_url = _UNSAFE_CHARS_RE.sub("", raw)
    parsed = parse_data_url(data_url)
    if parsed is None:
        raise ImageValidationError("Invalid image data format.")
    media_type, payload = parsed
    if media_type not in ALLOWED_IMAGE_TYPES:
        raise ImageValidationError("Invalid image type. Allowed: JPEG, PNG, GIF, WebP.")
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ImageValidationError("Failed to decode image data.") from None
    if len(decoded) > max_mb * 1024 * 1024:
        raise ImageValidationError(f"Image exceeds maximum size of {max_mb} MB.")
    name = str(image.get("name") or "image")[:255]
    return {"dataUrl": data_url, "name": name, "type": media_type}


def validate_images(images: Optional[List[Dict[str, Any]]], max_mb: int = 10) -> List[Dict[str, str]]:
    # The first invalid attachment rejects the whole request
    return [validate_image(img, max_mb=max_mb) for img in images or []]
