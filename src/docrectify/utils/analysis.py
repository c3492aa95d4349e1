"""
Content analysis for photographed documents.

Provides:
- Edge mask and projection profiles
- Content region detection (edge projection and dark-pixel density)
- Skew estimation by projection variance
- A common ContentAnalyzer interface selected by configuration

Boxes are reported as (ymin, xmin, ymax, xmax) normalized to 0-1000 on
each axis.
"""

import logging
import math
from dataclasses import dataclass
from typing import Tuple, Optional, Dict, Any
import numpy as np

from .images import to_grayscale, downsample, validate_image
from ..config import AnalysisConfig, ANALYZER_EDGE, ANALYZER_DENSITY

logger = logging.getLogger(__name__)

NORMALIZED_EXTENT = 1000.0
FALLBACK_BOX = (0.0, 0.0, NORMALIZED_EXTENT, NORMALIZED_EXTENT)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class AnalysisResult:
    """Detected content box and straightening angle."""
    box_2d: Tuple[float, float, float, float]  # ymin, xmin, ymax, xmax
    rotation_angle: float = 0.0
    method: str = ""
    is_fallback: bool = False

    @classmethod
    def fallback(cls, rotation_angle: float = 0.0, method: str = "") -> 'AnalysisResult':
        return cls(FALLBACK_BOX, rotation_angle, method, is_fallback=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "box_2d": [float(v) for v in self.box_2d],
            "rotation_angle": float(self.rotation_angle),
        }


# ============================================================================
# Signal Helpers
# ============================================================================

def edge_mask(gray: np.ndarray, threshold: int = 20) -> np.ndarray:
    """
    Mark pixels whose intensity differs from their right and lower neighbors.

    A pixel is an edge when |g - g_right| + |g - g_below| > threshold. The
    last row and column have no such neighbors and are never edges.

    Args:
        gray: Grayscale image
        threshold: Summed absolute difference needed for an edge

    Returns:
        Boolean mask with the same shape as gray
    """
    g = gray.astype(np.int16)
    mask = np.zeros(g.shape, dtype=bool)
    if g.shape[0] < 2 or g.shape[1] < 2:
        return mask

    core = g[:-1, :-1]
    diff = np.abs(core - g[:-1, 1:]) + np.abs(core - g[1:, :-1])
    mask[:-1, :-1] = diff > threshold
    return mask


def find_extent(
    profile: np.ndarray,
    threshold: float,
    inclusive: bool = False
) -> Optional[Tuple[int, int]]:
    """
    Scan a projection profile inward from both ends.

    Args:
        profile: Counts per row or column
        threshold: Count a position must exceed (or reach, if inclusive)
        inclusive: Use >= instead of >

    Returns:
        (first, last) active index, or None if the scan does not converge
    """
    active = profile >= threshold if inclusive else profile > threshold
    indices = np.flatnonzero(active)
    if indices.size == 0 or indices[0] >= indices[-1]:
        return None
    return int(indices[0]), int(indices[-1])


def normalize_box(
    ymin: float, xmin: float, ymax: float, xmax: float,
    height: int, width: int
) -> Tuple[float, float, float, float]:
    """Convert pixel extents to the 0-1000 scale of each axis."""
    return (
        ymin / height * NORMALIZED_EXTENT,
        xmin / width * NORMALIZED_EXTENT,
        ymax / height * NORMALIZED_EXTENT,
        xmax / width * NORMALIZED_EXTENT,
    )


# ============================================================================
# Skew Estimation
# ============================================================================

def projection_variance(
    ys: np.ndarray,
    xs: np.ndarray,
    center: Tuple[float, float],
    angle: float
) -> float:
    """
    Score how well edge pixels line up in rows after rotating by angle.

    Each pixel is binned by the nearest row it lands on once the image is rotated
    by angle (clockwise on screen) about center. The score is the variance
    of the non-empty bin counts: crisp text lines give tall peaks.
    """
    if ys.size == 0:
        return 0.0

    rad = math.radians(angle)
    cx, cy = center
    projected = (xs - cx) * math.sin(rad) + (ys - cy) * math.cos(rad) + cy
    _, counts = np.unique(np.rint(projected).astype(np.int64), return_counts=True)
    return float(np.var(counts))


def estimate_skew(
    mask: np.ndarray,
    stride: int = 2,
    search_range: int = 5,
    step: float = 1.0,
    vertical_bias: float = 1.10
) -> float:
    """
    Estimate the degrees needed to straighten the content of an edge mask.

    Coarse phase compares 0° with 90°; if 90° scores more than vertical_bias
    times the 0° score the content is taken to run vertically and the base
    becomes -90°. The fine phase scans base ± search_range in step increments
    and keeps the best scoring angle.

    Args:
        mask: Boolean edge mask
        stride: Sampling stride on both axes
        search_range: Half-width of the fine search in degrees
        step: Fine search step in degrees
        vertical_bias: Ratio the 90° score must beat

    Returns:
        Rotation angle in degrees
    """
    stride = max(1, int(stride))
    ys, xs = np.nonzero(mask[::stride, ::stride])
    if ys.size == 0:
        logger.debug("No edge pixels for skew estimation")
        return 0.0

    ys = ys.astype(np.float64) * stride
    xs = xs.astype(np.float64) * stride
    h, w = mask.shape
    center = (w / 2.0, h / 2.0)

    horizontal = projection_variance(ys, xs, center, 0.0)
    vertical = projection_variance(ys, xs, center, 90.0)
    base = -90.0 if vertical > horizontal * vertical_bias else 0.0
    logger.debug(
        f"Coarse skew scores: 0°={horizontal:.1f}, 90°={vertical:.1f} -> base {base:.0f}°"
    )

    steps = int(round(search_range / step))
    best_angle = base
    best_score = -1.0
    for i in range(-steps, steps + 1):
        angle = base + i * step
        score = projection_variance(ys, xs, center, angle)
        if score > best_score:
            best_angle, best_score = angle, score

    logger.debug(f"Estimated skew: {best_angle:.1f}° (score {best_score:.1f})")
    return best_angle


# ============================================================================
# Content Analyzers
# ============================================================================

class ContentAnalyzer:
    """
    Common interface for content region analyzers.

    Subclasses implement analyze() and return an AnalysisResult whose box
    satisfies ymin < ymax and xmin < xmax, or is the full-frame fallback.
    """

    name = "base"

    def analyze(self, image: np.ndarray) -> AnalysisResult:
        raise NotImplementedError


class EdgeProjectionAnalyzer(ContentAnalyzer):
    """
    Edge + projection profile analyzer with skew estimation.

    Works on a downsampled copy; rows and columns count as content once
    their edge count exceeds max(min_profile_count, fraction * length).
    """

    name = "edge"

    def __init__(
        self,
        max_side: int = 800,
        edge_threshold: int = 20,
        content_threshold_fraction: float = 0.005,
        min_profile_count: int = 5,
        padding_px: int = 15,
        skew_enabled: bool = True,
        skew_stride: int = 2,
        skew_search_range: int = 5,
        skew_step: float = 1.0,
        vertical_bias: float = 1.10
    ):
        self.max_side = max_side
        self.edge_threshold = edge_threshold
        self.content_threshold_fraction = content_threshold_fraction
        self.min_profile_count = min_profile_count
        self.padding_px = padding_px
        self.skew_enabled = skew_enabled
        self.skew_stride = skew_stride
        self.skew_search_range = skew_search_range
        self.skew_step = skew_step
        self.vertical_bias = vertical_bias

    def analyze(self, image: np.ndarray) -> AnalysisResult:
        validate_image(image)
        small, _ = downsample(image, self.max_side)
        mask = edge_mask(to_grayscale(small), self.edge_threshold)
        h, w = mask.shape

        angle = 0.0
        if self.skew_enabled:
            angle = estimate_skew(
                mask,
                stride=self.skew_stride,
                search_range=self.skew_search_range,
                step=self.skew_step,
                vertical_bias=self.vertical_bias
            )

        row_threshold = max(self.min_profile_count, self.content_threshold_fraction * w)
        col_threshold = max(self.min_profile_count, self.content_threshold_fraction * h)
        rows = find_extent(mask.sum(axis=1), row_threshold)
        cols = find_extent(mask.sum(axis=0), col_threshold)

        if rows is None or cols is None:
            logger.info("Content scan did not converge, using full frame")
            return AnalysisResult.fallback(angle, self.name)

        pad = self.padding_px
        ymin = max(0, rows[0] - pad)
        ymax = min(h, rows[1] + pad)
        xmin = max(0, cols[0] - pad)
        xmax = min(w, cols[1] + pad)

        box = normalize_box(ymin, xmin, ymax, xmax, h, w)
        logger.debug(f"Edge analysis box={tuple(round(v, 1) for v in box)}, angle={angle:.1f}")
        return AnalysisResult(box, angle, self.name)


class DensityAnalyzer(ContentAnalyzer):
    """
    Dark-pixel density analyzer.

    Counts pixels darker than dark_threshold per row and column; no padding
    and no rotation estimate.
    """

    name = "density"

    def __init__(
        self,
        max_side: int = 600,
        dark_threshold: int = 130,
        min_count: int = 3
    ):
        self.max_side = max_side
        self.dark_threshold = dark_threshold
        self.min_count = min_count

    def analyze(self, image: np.ndarray) -> AnalysisResult:
        validate_image(image)
        small, _ = downsample(image, self.max_side)

        if small.ndim == 3:
            brightness = small[:, :, :3].astype(np.float32).mean(axis=2)
        else:
            brightness = small.astype(np.float32)
        dark = brightness < self.dark_threshold
        h, w = dark.shape

        rows = find_extent(dark.sum(axis=1), self.min_count, inclusive=True)
        cols = find_extent(dark.sum(axis=0), self.min_count, inclusive=True)

        if rows is None or cols is None:
            logger.info("Density scan did not converge, using full frame")
            return AnalysisResult.fallback(0.0, self.name)

        box = normalize_box(rows[0], cols[0], rows[1], cols[1], h, w)
        return AnalysisResult(box, 0.0, self.name)


def create_analyzer(config=None) -> ContentAnalyzer:
    """
    Build the analyzer named by an AnalysisConfig.

    Args:
        config: AnalysisConfig (defaults used when None)

    Raises:
        ValueError: For an unknown method name
    """
    config = config or AnalysisConfig()

    if config.method == ANALYZER_EDGE:
        return EdgeProjectionAnalyzer(
            max_side=config.analysis_max_side,
            edge_threshold=config.edge_threshold,
            content_threshold_fraction=config.content_threshold_fraction,
            min_profile_count=config.min_profile_count,
            padding_px=config.padding_px,
            skew_enabled=config.skew_enabled,
            skew_stride=config.skew_stride,
            skew_search_range=config.skew_search_range,
            skew_step=config.skew_step,
            vertical_bias=config.vertical_bias
        )
    if config.method == ANALYZER_DENSITY:
        return DensityAnalyzer(
            max_side=config.density_max_side,
            dark_threshold=config.density_dark_threshold,
            min_count=config.density_min_count
        )

    raise ValueError(f"Unknown analysis method: {config.method}")
