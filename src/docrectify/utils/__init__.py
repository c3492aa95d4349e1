"""
Utility modules for the document rectification pipeline.
"""

from .io import decode_image, encode_jpeg, load_image, save_json, ensure_dir, ImageDecodeError
from .images import (
    rectify, remove_shadows, apply_scan_filter, trim_white_borders,
    EmptyImageError, SurfaceAcquisitionError,
)
from .analysis import (
    AnalysisResult, ContentAnalyzer, EdgeProjectionAnalyzer, DensityAnalyzer,
    create_analyzer, estimate_skew,
)
from .geometry import (
    Rectangle, InteractionMode, CropSession, EditSessionManager,
    screen_to_image, hit_test, apply_drag,
    CropGeometryError, SessionActiveError,
)
from .assembler import (
    ProcessedProblem, BatchProcessor, BatchResult,
    process_image_bytes, auto_crop_and_straighten, render_committed, box_to_crop,
)

__all__ = [
    # IO
    "decode_image", "encode_jpeg", "load_image", "save_json", "ensure_dir", "ImageDecodeError",
    # Images
    "rectify", "remove_shadows", "apply_scan_filter", "trim_white_borders",
    "EmptyImageError", "SurfaceAcquisitionError",
    # Analysis
    "AnalysisResult", "ContentAnalyzer", "EdgeProjectionAnalyzer", "DensityAnalyzer",
    "create_analyzer", "estimate_skew",
    # Geometry
    "Rectangle", "InteractionMode", "CropSession", "EditSessionManager",
    "screen_to_image", "hit_test", "apply_drag",
    "CropGeometryError", "SessionActiveError",
    # Assembly
    "ProcessedProblem", "BatchProcessor", "BatchResult",
    "process_image_bytes", "auto_crop_and_straighten", "render_committed", "box_to_crop",
]
