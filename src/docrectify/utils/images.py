"""
Image stages for the document rectification pipeline.

Provides:
- Grayscale conversion and validation
- Downsampling for analysis
- Rectification (crop + rotation onto a white canvas)
- Shadow removal (background normalization)
- Scan filter (grayscale contrast/brightness/highlight clip)
- White border trimming
- Debug visualization
"""

import logging
import math
from typing import Tuple, List, Optional
import numpy as np

logger = logging.getLogger(__name__)

WHITE = 255


# ============================================================================
# Errors
# ============================================================================

class EmptyImageError(ValueError):
    """Raised for images (or crops) with zero width or height."""


class SurfaceAcquisitionError(RuntimeError):
    """Raised when an output canvas cannot be allocated or encoded."""


# ============================================================================
# Helpers
# ============================================================================

def validate_image(image: np.ndarray) -> Tuple[int, int]:
    """
    Check that an image has a usable shape.

    Args:
        image: Input image (grayscale, BGR or BGRA)

    Returns:
        (height, width)

    Raises:
        EmptyImageError: If either dimension is zero
        ValueError: If the array is not an image
    """
    if image is None or image.ndim not in (2, 3):
        raise ValueError(f"Unexpected image shape: {getattr(image, 'shape', None)}")
    h, w = image.shape[:2]
    if h == 0 or w == 0:
        raise EmptyImageError(f"Image has zero size: {w}x{h}")
    return h, w


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """
    Convert image to grayscale if it's color.

    Args:
        image: Input image (BGR, BGRA or grayscale)

    Returns:
        Grayscale image
    """
    import cv2

    if len(image.shape) == 2:
        return image
    elif len(image.shape) == 3:
        if image.shape[2] == 3:
            return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        elif image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        elif image.shape[2] == 1:
            return image.squeeze(axis=2)

    raise ValueError(f"Unexpected image shape: {image.shape}")


def to_bgr(image: np.ndarray) -> np.ndarray:
    """Normalize grayscale or BGRA input to 3-channel BGR."""
    import cv2

    if len(image.shape) == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.shape[2] == 1:
        return cv2.cvtColor(image.squeeze(axis=2), cv2.COLOR_GRAY2BGR)
    return image


def downsample(image: np.ndarray, max_side: int) -> Tuple[np.ndarray, float]:
    """
    Shrink an image so its longest side is at most max_side.

    Never upsamples.

    Returns:
        Tuple of (image, scale) where scale <= 1
    """
    import cv2

    h, w = validate_image(image)
    scale = min(1.0, max_side / max(h, w))
    if scale >= 1.0:
        return image, 1.0

    new_w = max(1, int(w * scale))
    new_h = max(1, int(h * scale))
    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)
    logger.debug(f"Downsampled for analysis: {w}x{h} -> {new_w}x{new_h}")
    return resized, scale


# ============================================================================
# Rectification
# ============================================================================

def crop_image(image: np.ndarray, rect) -> np.ndarray:
    """
    Copy the pixels under a rectangle into a new buffer.

    The rectangle is rounded to whole pixels and clamped to the image.

    Args:
        image: Source image
        rect: Object with x, y, width, height in source pixels

    Returns:
        Cropped copy
    """
    h, w = validate_image(image)

    x0 = min(max(0, int(round(rect.x))), w)
    y0 = min(max(0, int(round(rect.y))), h)
    cw = min(int(round(rect.width)), w - x0)
    ch = min(int(round(rect.height)), h - y0)

    if cw <= 0 or ch <= 0:
        raise EmptyImageError(
            f"Crop ({rect.x}, {rect.y}, {rect.width}, {rect.height}) is empty for {w}x{h}"
        )

    return image[y0:y0 + ch, x0:x0 + cw].copy()


def rotate_onto_white(image: np.ndarray, angle: float) -> np.ndarray:
    """
    Rotate an image about its center onto an enlarged white canvas.

    Positive angles turn the content clockwise on screen. The canvas is
    sized so no corner is clipped; exposed corners are white.

    Raises:
        SurfaceAcquisitionError: If the canvas cannot be produced
    """
    import cv2

    h, w = validate_image(image)
    rad = math.radians(angle)
    cos = abs(math.cos(rad))
    sin = abs(math.sin(rad))
    new_w = max(1, int(round(w * cos + h * sin)))
    new_h = max(1, int(round(w * sin + h * cos)))

    # OpenCV angles are counter-clockwise
    rotation_matrix = cv2.getRotationMatrix2D((w / 2.0, h / 2.0), -angle, 1.0)
    rotation_matrix[0, 2] += (new_w - w) / 2.0
    rotation_matrix[1, 2] += (new_h - h) / 2.0

    border = (WHITE,) * image.shape[2] if image.ndim == 3 else WHITE
    try:
        rotated = cv2.warpAffine(
            image,
            rotation_matrix,
            (new_w, new_h),
            flags=cv2.INTER_CUBIC,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=border
        )
    except (cv2.error, MemoryError) as e:
        raise SurfaceAcquisitionError(
            f"Could not allocate {new_w}x{new_h} rotation canvas: {e}"
        ) from e

    logger.debug(f"Rotated {w}x{h} by {angle:.2f}° onto {new_w}x{new_h} canvas")
    return rotated


def rectify(
    image: np.ndarray,
    rect,
    angle: float = 0.0,
    rotation_threshold: float = 0.5
) -> np.ndarray:
    """
    Crop then rotate an image.

    Args:
        image: Source image
        rect: Crop rectangle in source pixels
        angle: Degrees to rotate the cropped content (clockwise on screen)
        rotation_threshold: Angles with magnitude at or below this skip rotation

    Returns:
        Rectified image
    """
    cropped = crop_image(image, rect)

    if abs(angle) <= rotation_threshold:
        return cropped

    return rotate_onto_white(cropped, angle)


# ============================================================================
# Shadow Removal
# ============================================================================

def estimate_background(image: np.ndarray, cell_size: int = 32) -> np.ndarray:
    """
    Estimate paper brightness per grid cell.

    Each cell takes the brightest pixel it contains, brightness being the
    mean of the color channels.

    Returns:
        Float array of shape (ceil(H / cell_size), ceil(W / cell_size))
    """
    h, w = validate_image(image)
    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")

    if image.ndim == 3:
        brightness = image[:, :, :3].astype(np.float32).mean(axis=2)
    else:
        brightness = image.astype(np.float32)

    rows = math.ceil(h / cell_size)
    cols = math.ceil(w / cell_size)
    padded = np.zeros((rows * cell_size, cols * cell_size), dtype=np.float32)
    padded[:h, :w] = brightness

    return padded.reshape(rows, cell_size, cols, cell_size).max(axis=(1, 3))


def remove_shadows(
    image: np.ndarray,
    cell_size: int = 32,
    dark_cell_cutoff: float = 40
) -> np.ndarray:
    """
    Flatten uneven lighting by dividing out the local background.

    Cells darker than dark_cell_cutoff are treated as ink and left as is.

    Args:
        image: Input image (BGR or grayscale)
        cell_size: Side of the square background cells
        dark_cell_cutoff: Background brightness below which no correction runs

    Returns:
        Corrected BGR image
    """
    image = to_bgr(image)
    h, w = validate_image(image)

    background = estimate_background(image, cell_size)
    factor = np.where(
        background < dark_cell_cutoff,
        1.0,
        255.0 / np.maximum(background, 1.0)
    ).astype(np.float32)

    factor_map = np.repeat(np.repeat(factor, cell_size, axis=0), cell_size, axis=1)[:h, :w]
    corrected = np.minimum(255.0, image.astype(np.float32) * factor_map[:, :, None])

    logger.debug(
        f"Applied shadow removal (cell={cell_size}, "
        f"background range {background.min():.0f}-{background.max():.0f})"
    )
    return np.rint(corrected).astype(np.uint8)


# ============================================================================
# Scan Filter
# ============================================================================

def scan_curve(
    luminance: np.ndarray,
    contrast_factor: float = 1.4,
    brightness_offset: float = 20.0,
    highlight_clip: float = 240
) -> np.ndarray:
    """Map luminance through the contrast/brightness/highlight-clip curve."""
    value = (luminance - 128.0) * contrast_factor + 128.0 + brightness_offset
    value = np.where(value > highlight_clip, 255.0, value)
    return np.clip(value, 0.0, 255.0)


def apply_scan_filter(
    image: np.ndarray,
    contrast_factor: float = 1.4,
    brightness_offset: float = 20.0,
    highlight_clip: float = 240
) -> np.ndarray:
    """
    Give an image a high-contrast monochrome "scanned" look.

    Args:
        image: Input image (BGR or grayscale)
        contrast_factor: Expansion around mid-gray
        brightness_offset: Added after contrast expansion
        highlight_clip: Values above this become pure white

    Returns:
        BGR image with equal channels
    """
    image = to_bgr(image)
    validate_image(image)

    pixels = image.astype(np.float32)
    b, g, r = pixels[:, :, 0], pixels[:, :, 1], pixels[:, :, 2]
    luminance = 0.299 * r + 0.587 * g + 0.114 * b

    value = np.rint(
        scan_curve(luminance, contrast_factor, brightness_offset, highlight_clip)
    ).astype(np.uint8)

    logger.debug(f"Applied scan filter (contrast={contrast_factor}, offset={brightness_offset})")
    return np.dstack([value, value, value])


# ============================================================================
# Border Trimming
# ============================================================================

def trim_white_borders(
    image: np.ndarray,
    intensity_threshold: int = 250,
    min_count: int = 5,
    margin: int = 10
) -> np.ndarray:
    """
    Remove uniform white margins around the content.

    Args:
        image: Input image
        intensity_threshold: Pixels darker than this count as content
        min_count: Minimum content pixels for a row/column to count
        margin: Padding kept around the detected content

    Returns:
        Trimmed copy, or the input unchanged when no content box is found
    """
    h, w = validate_image(image)

    content = to_grayscale(image) < intensity_threshold
    rows = np.flatnonzero(content.sum(axis=1) >= min_count)
    cols = np.flatnonzero(content.sum(axis=0) >= min_count)

    if rows.size == 0 or cols.size == 0:
        logger.debug("Border trim found no content, returning input")
        return image

    min_y, max_y = int(rows[0]), int(rows[-1])
    min_x, max_x = int(cols[0]), int(cols[-1])
    if min_x >= max_x or min_y >= max_y:
        logger.debug("Border trim degenerate, returning input")
        return image

    tx = max(0, min_x - margin)
    ty = max(0, min_y - margin)
    tw = min(w - tx, (max_x - min_x) + margin * 2)
    th = min(h - ty, (max_y - min_y) + margin * 2)

    trimmed = image[ty:ty + th, tx:tx + tw].copy()

    logger.debug(f"Trimmed borders: {w}x{h} -> {tw}x{th}")
    return trimmed


# ============================================================================
# Debug Visualization
# ============================================================================

def draw_debug_image(
    image: np.ndarray,
    boxes: List[Tuple[int, int, int, int]],
    labels: Optional[List[str]] = None,
    colors: Optional[List[Tuple[int, int, int]]] = None,
    line_width: int = 2
) -> np.ndarray:
    """
    Draw bounding boxes on image for debugging.

    Args:
        image: Input image
        boxes: List of (x, y, width, height) tuples
        labels: Optional labels for each box
        colors: Optional colors for each box (BGR)
        line_width: Line thickness

    Returns:
        Image with drawn boxes
    """
    import cv2

    debug_img = to_bgr(image).copy()

    default_colors = [
        (0, 0, 255),    # Red
        (0, 255, 0),    # Green
        (255, 0, 0),    # Blue
    ]

    for i, box in enumerate(boxes):
        x, y, w, h = (int(round(v)) for v in box)
        color = colors[i] if colors and i < len(colors) else default_colors[i % len(default_colors)]

        cv2.rectangle(debug_img, (x, y), (x + w, y + h), color, line_width)

        if labels and i < len(labels):
            cv2.putText(
                debug_img,
                labels[i],
                (x, max(10, y - 5)),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.5,
                color,
                1
            )

    return debug_img
