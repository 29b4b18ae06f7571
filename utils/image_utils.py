"""
Image utility functions
"""

import cv2
import numpy as np
from pathlib import Path
from typing import Optional, Tuple

def load_image(image_path: str) -> Optional[np.ndarray]:
    """Load an image from disk as a BGR array (None when unreadable)"""
    if not Path(image_path).is_file():
        return None
    return cv2.imread(image_path)

def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes (PNG, JPEG, ...) into a BGR array"""
    if not data:
        return None
    buffer = np.frombuffer(data, dtype=np.uint8)
    return cv2.imdecode(buffer, cv2.IMREAD_COLOR)

def encode_png(image: np.ndarray) -> bytes:
    """Encode a BGR array as PNG bytes"""
    ok, buffer = cv2.imencode('.png', image)
    if not ok:
        raise ValueError("PNG encoding failed")
    return buffer.tobytes()

def resize_maintain_aspect(image: np.ndarray,
                          target_size: Tuple[int, int]) -> np.ndarray:
    """Resize image maintaining aspect ratio"""
    h, w = image.shape[:2]
    target_w, target_h = target_size

    scale = min(target_w / w, target_h / h)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))

    interpolation = cv2.INTER_AREA if scale < 1 else cv2.INTER_LINEAR
    return cv2.resize(image, (new_w, new_h), interpolation=interpolation)

def fit(image: np.ndarray, target_size: Tuple[int, int]) -> np.ndarray:
    """
    Scale image into target_size keeping aspect ratio, centred on a
    black canvas (letterbox)
    """
    target_w, target_h = target_size
    resized = resize_maintain_aspect(image, target_size)
    h, w = resized.shape[:2]

    canvas = np.zeros((target_h, target_w) + image.shape[2:], dtype=image.dtype)
    offset_x = (target_w - w) // 2
    offset_y = (target_h - h) // 2
    canvas[offset_y:offset_y + h, offset_x:offset_x + w] = resized
    return canvas

def zoom(image: np.ndarray, factor: float) -> np.ndarray:
    """
    Centre crop keeping 1/factor of each side

    Factors <= 1 return the image unchanged.
    """
    if factor <= 1:
        return image

    h, w = image.shape[:2]
    dx = int(w * (1 - 1 / factor) / 2)
    dy = int(h * (1 - 1 / factor) / 2)
    if w - 2 * dx < 1 or h - 2 * dy < 1:
        return image

    return image[dy:h - dy, dx:w - dx]
