"""
Configuration and constants for the document rectification pipeline.

This module provides:
- Global logging setup
- Analysis, cropping, filter, editor and export parameters
- Environment overrides
- Mapping from the external option names (paddingPx, minSizePx, ...)
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
import logging

# ============================================================================
# Logging Configuration
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("docrectify")


# ============================================================================
# Processing Configuration
# ============================================================================

ANALYZER_EDGE = "edge"
ANALYZER_DENSITY = "density"


@dataclass
class AnalysisConfig:
    """Content region detection and skew estimation configuration."""
    method: str = ANALYZER_EDGE  # edge, density
    analysis_max_side: int = 800
    edge_threshold: int = 20
    content_threshold_fraction: float = 0.005
    min_profile_count: int = 5
    padding_px: int = 15  # Analysis-space pixels
    # Density analyzer
    density_max_side: int = 600
    density_dark_threshold: int = 130
    density_min_count: int = 3
    # Skew search
    skew_enabled: bool = True
    skew_stride: int = 2
    skew_search_range: int = 5
    skew_step: float = 1.0
    vertical_bias: float = 1.10


@dataclass
class CropConfig:
    """Conversion of an analysis box into a crop rectangle."""
    crop_padding: float = 20.0  # Normalized (0-1000) units
    rotation_threshold: float = 0.5  # Degrees below which no rotation runs


@dataclass
class FilterConfig:
    """Shadow removal, scan filter and border trimming."""
    enable_shadow_removal: bool = True
    grid_cell_size: int = 32
    dark_cell_cutoff: int = 40
    enable_scan_filter: bool = True
    contrast_factor: float = 1.4
    brightness_offset: float = 20.0
    highlight_clip: int = 240
    enable_border_trim: bool = True
    trim_intensity_threshold: int = 250
    trim_min_count: int = 5
    trim_margin: int = 10


@dataclass
class EditorConfig:
    """Interactive crop editor settings."""
    min_size_px: float = 30.0
    handle_tolerance: float = 30.0  # Screen pixels, divided by zoom
    initial_margin: float = 30.0
    min_safe_padding: float = 10.0
    initial_min_size: float = 50.0
    max_zoom: float = 0.9


@dataclass
class ExportConfig:
    """Export configuration."""
    jpeg_quality: int = 90
    commit_jpeg_quality: int = 95
    manifest_name: str = "manifest.json"


@dataclass
class PipelineConfig:
    """Main pipeline configuration."""
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    crop: CropConfig = field(default_factory=CropConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    editor: EditorConfig = field(default_factory=EditorConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    # Global settings
    max_workers: int = 1  # 1 = strictly sequential batch
    debug_mode: bool = False

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> 'PipelineConfig':
        """
        Build a configuration from the collaborator-facing option names.

        Unknown keys are ignored with a warning.
        """
        config = cls()
        for key, value in options.items():
            target = OPTION_MAP.get(key)
            if target is None:
                logger.warning(f"Ignoring unknown option: {key}")
                continue
            section, attr = target
            setattr(getattr(config, section), attr, value)
        return config


# External option name -> (section, attribute)
OPTION_MAP = {
    "paddingPx": ("analysis", "padding_px"),
    "minSizePx": ("editor", "min_size_px"),
    "edgeThreshold": ("analysis", "edge_threshold"),
    "contentThresholdFraction": ("analysis", "content_threshold_fraction"),
    "gridCellSize": ("filters", "grid_cell_size"),
    "contrastFactor": ("filters", "contrast_factor"),
    "brightnessOffset": ("filters", "brightness_offset"),
    "highlightClip": ("filters", "highlight_clip"),
    "enableShadowRemoval": ("filters", "enable_shadow_removal"),
    "enableScanFilter": ("filters", "enable_scan_filter"),
}


# ============================================================================
# Default Configuration Instance
# ============================================================================

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() == "true"


def get_config() -> PipelineConfig:
    """Get the default pipeline configuration with environment overrides."""
    config = PipelineConfig()

    if _env_flag("DOCRECTIFY_DEBUG"):
        config.debug_mode = True

    analyzer = os.environ.get("DOCRECTIFY_ANALYZER")
    if analyzer:
        config.analysis.method = analyzer.lower()

    workers: Optional[str] = os.environ.get("DOCRECTIFY_WORKERS")
    if workers:
        try:
            config.max_workers = max(1, int(workers))
        except ValueError:
            logger.warning(f"Invalid DOCRECTIFY_WORKERS value: {workers}")

    if _env_flag("DOCRECTIFY_NO_SHADOW_REMOVAL"):
        config.filters.enable_shadow_removal = False

    if _env_flag("DOCRECTIFY_NO_SCAN_FILTER"):
        config.filters.enable_scan_filter = False

    return config
