from __future__ import annotations

import cv2
import numpy as np

from .constants import IMAGE_FORMAT, IMAGE_QUALITY, NO_IMAGE_TEXT, PLACEHOLDER_SIZE


def encode_image(image: np.ndarray, quality: int = IMAGE_QUALITY) -> bytes:
    quality_value = int(quality)
    if not 1 <= quality_value <= 100:
        raise ValueError(f"quality must be 1-100, got {quality_value}")
    ok, data = cv2.imencode(IMAGE_FORMAT, image, [cv2.IMWRITE_JPEG_QUALITY, quality_value])
    if not ok:
        raise ValueError(f"jpeg encoding failed for shape={image.shape}, dtype={image.dtype}")
    return data.tobytes()


def decode_image(payload: bytes) -> np.ndarray | None:
    """Decode a compressed payload, returning ``None`` if it is not an image."""
    if not payload:
        return None
    buffer = np.frombuffer(payload, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    if image is None or image.size == 0:
        return None
    return image


def status_image(
    text: str = NO_IMAGE_TEXT,
    size: tuple[int, int] = PLACEHOLDER_SIZE,
) -> np.ndarray:
    """Black frame with ``text`` centered in white."""
    width, height = size
    image = np.zeros((int(height), int(width), 3), dtype=np.uint8)
    font = cv2.FONT_HERSHEY_SIMPLEX
    scale = max(0.3, width / 640.0)
    thickness = 1
    (text_w, text_h), _baseline = cv2.getTextSize(text, font, scale, thickness)
    origin = (max(0, (width - text_w) // 2), max(text_h, (height + text_h) // 2))
    _ = cv2.putText(image, text, origin, font, scale, (255, 255, 255), thickness, cv2.LINE_AA)
    return image


def prepare_frame(frame: np.ndarray, shrink_ratio: float = 1.0, grayscale: bool = False) -> np.ndarray:
    """Downscale and/or desaturate a captured frame before it is streamed."""
    ratio = float(shrink_ratio)
    if ratio <= 0.0 or ratio > 1.0:
        raise ValueError(f"shrink_ratio must be in (0, 1], got {ratio}")

    out = frame
    if ratio < 1.0:
        height, width = frame.shape[:2]
        size = (max(1, int(round(width * ratio))), max(1, int(round(height * ratio))))
        out = cv2.resize(out, size, interpolation=cv2.INTER_AREA)

    if grayscale and out.ndim == 3:
        out = cv2.cvtColor(out, cv2.COLOR_BGR2GRAY)

    return out
