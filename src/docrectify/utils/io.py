"""
I/O utilities for the document rectification pipeline.

Handles:
- Decoding uploads and encoding JPEG output
- Discovering photos on disk
- Manifest JSON
- Batch progress bookkeeping
"""

import json
import logging
from pathlib import Path
from typing import List, Union, Optional, Any
from dataclasses import dataclass, asdict, field
from enum import Enum

import numpy as np

from .images import SurfaceAcquisitionError, to_bgr, validate_image

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.tiff', '.tif', '.bmp', '.webp')


class ImageDecodeError(ValueError):
    """Raised when image bytes cannot be decoded."""


# ============================================================================
# Decoding and Encoding
# ============================================================================

def decode_image(data: bytes) -> np.ndarray:
    """
    Decode an uploaded photo into a BGR array.

    Grayscale and alpha images are converted to 3 channels; 16-bit images
    are scaled down to 8 bits.

    Raises:
        ImageDecodeError: If the bytes are not a decodable image
    """
    import cv2

    if not data:
        raise ImageDecodeError("No image data")

    buffer = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)

    if img is None:
        raise ImageDecodeError(f"Could not decode image ({len(data)} bytes)")

    if img.dtype != np.uint8:
        img = cv2.convertScaleAbs(img, alpha=255.0 / max(1, int(img.max())))

    return to_bgr(img)


def encode_jpeg(image: np.ndarray, quality: int = 90) -> bytes:
    """
    Encode an image as JPEG bytes.

    Raises:
        SurfaceAcquisitionError: If encoding fails
    """
    import cv2

    validate_image(image)
    ok, buffer = cv2.imencode('.jpg', image, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    if not ok:
        raise SurfaceAcquisitionError("JPEG encoding failed")
    return buffer.tobytes()


# ============================================================================
# Files
# ============================================================================

def read_bytes(path: Union[str, Path]) -> bytes:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {path}")
    return path.read_bytes()


def load_image(image_path: Union[str, Path]) -> np.ndarray:
    """
    Read and decode a photo from disk.

    Raises:
        FileNotFoundError: If the file is missing
        ImageDecodeError: If the file is not an image
    """
    img = decode_image(read_bytes(image_path))
    logger.debug(f"Loaded {image_path}: {img.shape[1]}x{img.shape[0]}")
    return img


def list_image_files(
    folder: Union[str, Path],
    extensions: tuple = IMAGE_EXTENSIONS
) -> List[Path]:
    """
    List the photos directly inside a folder, sorted by name.

    Args:
        folder: Folder to scan (not recursive)
        extensions: Accepted lowercase suffixes

    Returns:
        Sorted list of paths
    """
    folder = Path(folder)
    if not folder.is_dir():
        raise NotADirectoryError(f"Not a directory: {folder}")

    photos = sorted(
        p for p in folder.iterdir()
        if p.is_file() and p.suffix.lower() in extensions
    )

    logger.info(f"Found {len(photos)} photo(s) in {folder}")
    return photos


def save_image(
    image: np.ndarray,
    output_path: Union[str, Path],
    quality: int = 90
) -> Path:
    """Write an array with OpenCV, choosing the codec from the suffix."""
    import cv2

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    params = []
    if output_path.suffix.lower() in ('.jpg', '.jpeg'):
        params = [cv2.IMWRITE_JPEG_QUALITY, int(quality)]

    if not cv2.imwrite(str(output_path), image, params):
        raise SurfaceAcquisitionError(f"Could not write image: {output_path}")

    logger.debug(f"Wrote {output_path}")
    return output_path


def save_bytes(data: bytes, output_path: Union[str, Path]) -> Path:
    """Write encoded bytes to a file, creating parent directories."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(data)
    logger.debug(f"Wrote {len(data)} bytes to {output_path}")
    return output_path


def ensure_dir(path: Union[str, Path]) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def detect_input_type(input_path: Union[str, Path]) -> str:
    """
    Classify a command-line input.

    Returns:
        'image' for a single photo, 'image_folder' for a folder holding at
        least one photo, otherwise 'unknown'
    """
    input_path = Path(input_path)

    if input_path.is_dir():
        if any(p.suffix.lower() in IMAGE_EXTENSIONS for p in input_path.iterdir()):
            return 'image_folder'
        return 'unknown'

    if input_path.is_file() and input_path.suffix.lower() in IMAGE_EXTENSIONS:
        return 'image'

    return 'unknown'


# ============================================================================
# Manifest JSON
# ============================================================================

class ManifestEncoder(json.JSONEncoder):
    """Serializes numpy scalars, enums, paths and result records."""

    def default(self, obj):
        if isinstance(obj, np.generic):
            return obj.item()
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Path):
            return str(obj)
        if hasattr(obj, 'to_dict'):
            return obj.to_dict()
        if hasattr(obj, '__dataclass_fields__'):
            return asdict(obj)
        return super().default(obj)


def save_json(data: Any, output_path: Union[str, Path], indent: int = 2) -> Path:
    """Write data as UTF-8 JSON, creating parent directories."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(
        json.dumps(data, indent=indent, ensure_ascii=False, cls=ManifestEncoder),
        encoding='utf-8'
    )
    logger.debug(f"Wrote manifest {output_path}")
    return output_path


def load_json(json_path: Union[str, Path]) -> Any:
    json_path = Path(json_path)
    if not json_path.exists():
        raise FileNotFoundError(f"JSON file not found: {json_path}")
    return json.loads(json_path.read_text(encoding='utf-8'))


# ============================================================================
# Progress Tracking
# ============================================================================

@dataclass
class ProcessingProgress:
    """Counts finished and failed files in a batch."""
    total: int = 0
    current: int = 0
    failed: int = 0
    current_file: str = ""
    errors: List[str] = field(default_factory=list)

    def complete_file(self, name: Optional[str] = None):
        self.current += 1
        if name is not None:
            self.current_file = name

    def add_error(self, error: str):
        self.failed += 1
        self.errors.append(error)
        logger.error(error)
