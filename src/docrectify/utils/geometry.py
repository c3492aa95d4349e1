"""
Crop rectangle geometry for the interactive editor.

Provides:
- Rectangle model and invariant clamping
- Screen <-> image coordinate transforms for a rotated, zoomed display
- Handle hit-testing
- Drag application against a snapshot taken at pointer-down
- CropSession state machine and single-editor session manager

All rectangles are in source image pixels. After every mutation a session's
rectangle lies inside the image and is at least min_size on both sides.
"""

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple, Any

from ..config import EditorConfig, PipelineConfig

logger = logging.getLogger(__name__)

Point = Tuple[float, float]
Size = Tuple[int, int]  # (width, height)

LEFT, RIGHT, TOP, BOTTOM = "left", "right", "top", "bottom"


# ============================================================================
# Errors
# ============================================================================

class CropGeometryError(ValueError):
    """Raised when no rectangle can satisfy the crop invariant."""


class SessionActiveError(RuntimeError):
    """Raised when an image already has an open edit session."""


# ============================================================================
# Data Classes and Enums
# ============================================================================

class InteractionMode(Enum):
    """Pointer interaction modes."""
    NONE = "none"
    MOVE = "move"
    RESIZE_TL = "resize-tl"
    RESIZE_TR = "resize-tr"
    RESIZE_BL = "resize-bl"
    RESIZE_BR = "resize-br"
    RESIZE_TC = "resize-tc"
    RESIZE_BC = "resize-bc"
    RESIZE_ML = "resize-ml"
    RESIZE_MR = "resize-mr"

    @property
    def edges(self) -> frozenset:
        """Rectangle edges adjusted by this mode."""
        return _MODE_EDGES.get(self, frozenset())

    @property
    def is_resize(self) -> bool:
        return bool(self.edges)


_MODE_EDGES = {
    InteractionMode.RESIZE_TL: frozenset({LEFT, TOP}),
    InteractionMode.RESIZE_TR: frozenset({RIGHT, TOP}),
    InteractionMode.RESIZE_BL: frozenset({LEFT, BOTTOM}),
    InteractionMode.RESIZE_BR: frozenset({RIGHT, BOTTOM}),
    InteractionMode.RESIZE_TC: frozenset({TOP}),
    InteractionMode.RESIZE_BC: frozenset({BOTTOM}),
    InteractionMode.RESIZE_ML: frozenset({LEFT}),
    InteractionMode.RESIZE_MR: frozenset({RIGHT}),
}


@dataclass
class Rectangle:
    """Axis-aligned rectangle in source image pixels."""
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Point:
        return (self.x + self.width / 2, self.y + self.height / 2)

    def contains(self, point: Point) -> bool:
        """Strict interior test."""
        px, py = point
        return self.x < px < self.right and self.y < py < self.bottom

    def is_valid(self, image_size: Size, min_size: float) -> bool:
        """Check the editing invariant."""
        w, h = image_size
        return (
            self.x >= 0 and self.y >= 0
            and self.right <= w and self.bottom <= h
            and self.width >= min_size and self.height >= min_size
        )

    def copy(self) -> 'Rectangle':
        return Rectangle(self.x, self.y, self.width, self.height)

    def to_dict(self) -> Dict[str, float]:
        return {
            "x": float(self.x),
            "y": float(self.y),
            "width": float(self.width),
            "height": float(self.height),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Rectangle':
        return cls(float(data["x"]), float(data["y"]),
                   float(data["width"]), float(data["height"]))


@dataclass
class DragSnapshot:
    """Pointer anchor and rectangle captured when a drag starts."""
    anchor: Point
    rect: Rectangle


@dataclass
class CommitResult:
    """Output of committing an edit session."""
    image_bytes: bytes
    crop: Rectangle
    rotation: float


# ============================================================================
# Coordinate Transforms
# ============================================================================

def screen_to_image(
    point: Point,
    display_center: Point,
    rotation: float,
    zoom: float,
    image_size: Size
) -> Point:
    """
    Map a screen pointer position to image pixel coordinates.

    The image is displayed scaled by zoom and rotated by rotation degrees
    (clockwise on screen) about display_center.

    Args:
        point: Pointer position in screen space
        display_center: Screen position of the displayed image's center
        rotation: Display rotation in degrees
        zoom: Display scale
        image_size: (width, height) of the source image

    Returns:
        (x, y) in source image pixels
    """
    if zoom <= 0:
        raise ValueError(f"zoom must be positive, got {zoom}")

    rad = math.radians(-rotation)
    rel_x = point[0] - display_center[0]
    rel_y = point[1] - display_center[1]
    rot_x = rel_x * math.cos(rad) - rel_y * math.sin(rad)
    rot_y = rel_x * math.sin(rad) + rel_y * math.cos(rad)

    return (rot_x / zoom + image_size[0] / 2, rot_y / zoom + image_size[1] / 2)


def image_to_screen(
    point: Point,
    display_center: Point,
    rotation: float,
    zoom: float,
    image_size: Size
) -> Point:
    """Inverse of screen_to_image."""
    rad = math.radians(rotation)
    rel_x = (point[0] - image_size[0] / 2) * zoom
    rel_y = (point[1] - image_size[1] / 2) * zoom
    rot_x = rel_x * math.cos(rad) - rel_y * math.sin(rad)
    rot_y = rel_x * math.sin(rad) + rel_y * math.cos(rad)

    return (rot_x + display_center[0], rot_y + display_center[1])


def fit_zoom(image_size: Size, viewport_size: Size, max_zoom: float = 0.9) -> float:
    """Largest zoom that fits the image in the viewport, capped at max_zoom."""
    iw, ih = image_size
    vw, vh = viewport_size
    if iw <= 0 or ih <= 0:
        raise CropGeometryError(f"Image has zero size: {iw}x{ih}")
    return min(vw / iw, vh / ih, max_zoom)


# ============================================================================
# Hit Testing and Dragging
# ============================================================================

def handle_positions(rect: Rectangle) -> Dict[InteractionMode, Point]:
    """Handle centers in hit-test priority order: corners, then edge midpoints."""
    mid_x, mid_y = rect.center
    return {
        InteractionMode.RESIZE_TL: (rect.x, rect.y),
        InteractionMode.RESIZE_TR: (rect.right, rect.y),
        InteractionMode.RESIZE_BL: (rect.x, rect.bottom),
        InteractionMode.RESIZE_BR: (rect.right, rect.bottom),
        InteractionMode.RESIZE_TC: (mid_x, rect.y),
        InteractionMode.RESIZE_BC: (mid_x, rect.bottom),
        InteractionMode.RESIZE_ML: (rect.x, mid_y),
        InteractionMode.RESIZE_MR: (rect.right, mid_y),
    }


def hit_test(
    point: Point,
    rect: Rectangle,
    zoom: float = 1.0,
    tolerance: float = 30.0
) -> InteractionMode:
    """
    Pick the interaction for an image-space pointer position.

    Handles match within tolerance / zoom on both axes; otherwise a point
    strictly inside the rectangle starts a move.
    """
    reach = tolerance / zoom
    px, py = point

    for mode, (hx, hy) in handle_positions(rect).items():
        if abs(px - hx) < reach and abs(py - hy) < reach:
            return mode

    if rect.contains(point):
        return InteractionMode.MOVE
    return InteractionMode.NONE


def apply_drag(
    mode: InteractionMode,
    snapshot: Rectangle,
    delta: Point,
    image_size: Size,
    min_size: float = 30.0
) -> Rectangle:
    """
    Compute the rectangle for a drag offset from the drag-start snapshot.

    Args:
        mode: Active interaction
        snapshot: Rectangle at drag start (satisfies the invariant)
        delta: Image-space pointer offset from the drag anchor
        image_size: (width, height) of the image
        min_size: Minimum rectangle side

    Returns:
        New rectangle satisfying the invariant
    """
    img_w, img_h = image_size
    dx, dy = delta
    x, y, w, h = snapshot.x, snapshot.y, snapshot.width, snapshot.height

    if mode == InteractionMode.MOVE:
        x = max(0.0, min(img_w - w, snapshot.x + dx))
        y = max(0.0, min(img_h - h, snapshot.y + dy))
        if x != snapshot.x + dx or y != snapshot.y + dy:
            logger.debug("Move clamped at image bounds")
        return Rectangle(x, y, w, h)

    edges = mode.edges
    if LEFT in edges:
        x = max(0.0, min(snapshot.x + dx, snapshot.right - min_size))
        w = snapshot.right - x
    if RIGHT in edges:
        w = max(min_size, min(img_w - x, snapshot.width + dx))
    if TOP in edges:
        y = max(0.0, min(snapshot.y + dy, snapshot.bottom - min_size))
        h = snapshot.bottom - y
    if BOTTOM in edges:
        h = max(min_size, min(img_h - y, snapshot.height + dy))

    return Rectangle(x, y, w, h)


def clamp_rect(rect: Rectangle, image_size: Size, min_size: float = 30.0) -> Rectangle:
    """
    Force a rectangle to satisfy the crop invariant.

    Raises:
        CropGeometryError: If the image is smaller than min_size
    """
    img_w, img_h = image_size
    if img_w < min_size or img_h < min_size:
        raise CropGeometryError(
            f"Image {img_w}x{img_h} is smaller than the minimum crop size {min_size}"
        )

    w = min(max(rect.width, min_size), img_w)
    h = min(max(rect.height, min_size), img_h)
    x = min(max(rect.x, 0.0), img_w - w)
    y = min(max(rect.y, 0.0), img_h - h)
    return Rectangle(float(x), float(y), float(w), float(h))


def initial_crop(image_size: Size, crop: Optional[Rectangle] = None, config=None) -> Rectangle:
    """
    Starting rectangle for an edit session.

    A detected crop is kept min_safe_padding inside the image edges; without
    one the rectangle is inset by initial_margin (at most a quarter of each
    side). The result always satisfies the editing invariant.
    """
    config = config or EditorConfig()
    img_w, img_h = image_size
    pad = config.min_safe_padding
    min_size = config.initial_min_size

    if crop is not None:
        rect = Rectangle(
            max(pad, min(crop.x, img_w - min_size - pad)),
            max(pad, min(crop.y, img_h - min_size - pad)),
            min(crop.width, img_w - max(pad, crop.x) - pad),
            min(crop.height, img_h - max(pad, crop.y) - pad),
        )
    else:
        x = min(config.initial_margin, img_w / 4)
        y = min(config.initial_margin, img_h / 4)
        rect = Rectangle(x, y, max(min_size, img_w - x * 2), max(min_size, img_h - y * 2))

    return clamp_rect(rect, image_size, config.min_size_px)


# ============================================================================
# Edit Session
# ============================================================================

class CropSession:
    """
    Interactive crop/rotate state for one image.

    Pointer positions are in screen space and are mapped to image space with
    screen_to_image using the session's display center, rotation and zoom.
    """

    def __init__(
        self,
        image_size: Size,
        crop: Optional[Rectangle] = None,
        rotation: float = 0.0,
        zoom: float = 1.0,
        display_center: Optional[Point] = None,
        config=None
    ):
        self.config = config or EditorConfig()
        self.image_size = (int(image_size[0]), int(image_size[1]))
        self.min_size = self.config.min_size_px
        self.rect = initial_crop(self.image_size, crop, self.config)
        self.rotation = float(rotation)
        self.zoom = float(zoom)
        if display_center is None:
            display_center = (self.image_size[0] * zoom / 2, self.image_size[1] * zoom / 2)
        self.display_center = display_center
        self.mode = InteractionMode.NONE
        self._drag: Optional[DragSnapshot] = None

    @property
    def is_dragging(self) -> bool:
        return self.mode != InteractionMode.NONE

    def to_image(self, point: Point) -> Point:
        return screen_to_image(point, self.display_center, self.rotation,
                               self.zoom, self.image_size)

    def set_view(self, display_center: Point, zoom: float):
        """Update the display transform."""
        if zoom <= 0:
            raise ValueError(f"zoom must be positive, got {zoom}")
        self.display_center = display_center
        self.zoom = float(zoom)

    def set_rotation(self, angle: float):
        self.rotation = float(angle)

    def rotate_quarter(self) -> float:
        """Rotate by +90° and snap to the nearest quarter turn."""
        self.rotation = float(round((self.rotation + 90) / 90) * 90)
        return self.rotation

    def pointer_down(self, point: Point) -> InteractionMode:
        """Start an interaction if the pointer hits a handle or the interior."""
        pos = self.to_image(point)
        mode = hit_test(pos, self.rect, self.zoom, self.config.handle_tolerance)
        if mode != InteractionMode.NONE:
            self.mode = mode
            self._drag = DragSnapshot(anchor=pos, rect=self.rect.copy())
            logger.debug(f"Drag started: mode={mode.value} at ({pos[0]:.1f}, {pos[1]:.1f})")
        return mode

    def pointer_move(self, point: Point) -> Rectangle:
        """Update the rectangle for the current drag."""
        if self.mode == InteractionMode.NONE or self._drag is None:
            return self.rect

        pos = self.to_image(point)
        delta = (pos[0] - self._drag.anchor[0], pos[1] - self._drag.anchor[1])
        self.rect = apply_drag(self.mode, self._drag.rect, delta,
                               self.image_size, self.min_size)
        return self.rect

    def pointer_up(self):
        """End the interaction. Safe to call when idle."""
        if self.mode != InteractionMode.NONE:
            logger.debug(f"Drag ended: mode={self.mode.value}")
        self.mode = InteractionMode.NONE
        self._drag = None

    pointer_leave = pointer_up

    def commit(self, image, config=None) -> CommitResult:
        """
        Render the image with the session's crop and rotation.

        Args:
            image: Source image the session was opened for
            config: PipelineConfig for filters and JPEG quality

        Returns:
            CommitResult with JPEG bytes, crop and rotation
        """
        from .assembler import render_committed
        from .io import encode_jpeg

        config = config or PipelineConfig()
        h, w = image.shape[:2]
        if (w, h) != self.image_size:
            raise CropGeometryError(
                f"Session is for a {self.image_size[0]}x{self.image_size[1]} image, got {w}x{h}"
            )

        self.pointer_up()
        rendered = render_committed(image, self.rect, self.rotation, config)
        data = encode_jpeg(rendered, config.export.commit_jpeg_quality)
        logger.info(
            f"Committed crop {self.rect.to_dict()} at {self.rotation:.1f}°"
        )
        return CommitResult(data, self.rect.copy(), self.rotation)


class EditSessionManager:
    """Allows at most one open CropSession per image key."""

    def __init__(self):
        self._sessions: Dict[str, CropSession] = {}
        self._lock = threading.Lock()

    def open(self, key: str, image_size: Size, **kwargs) -> CropSession:
        """
        Open a session for an image.

        Raises:
            SessionActiveError: If the image already has an open session
        """
        with self._lock:
            if key in self._sessions:
                raise SessionActiveError(f"An edit session is already open for {key}")
            session = CropSession(image_size, **kwargs)
            self._sessions[key] = session
        logger.debug(f"Opened edit session for {key}")
        return session

    def close(self, key: str):
        with self._lock:
            self._sessions.pop(key, None)

    def get(self, key: str) -> Optional[CropSession]:
        return self._sessions.get(key)

    def is_active(self, key: str) -> bool:
        return key in self._sessions

    @contextmanager
    def session(self, key: str, image_size: Size, **kwargs):
        """Context manager that opens and always closes a session."""
        session = self.open(key, image_size, **kwargs)
        try:
            yield session
        finally:
            self.close(key)
