"""
Pipeline assembly for document rectification.

Provides:
- ProcessedProblem record handed back to the caller
- Single image pipeline (analyze -> rectify -> filters -> trim -> JPEG)
- Editor commit rendering
- Batch processing with per-file isolation, progress and cancellation
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Dict, Any, Union, Tuple, Callable, Iterable

import numpy as np

from .analysis import AnalysisResult, ContentAnalyzer, create_analyzer, NORMALIZED_EXTENT
from .geometry import Rectangle, CommitResult
from .images import rectify, remove_shadows, apply_scan_filter, trim_white_borders, validate_image
from .io import decode_image, encode_jpeg, read_bytes, ImageDecodeError, ProcessingProgress
from ..config import PipelineConfig, FilterConfig

logger = logging.getLogger(__name__)

BatchItem = Union[str, Path, Tuple[str, bytes]]
ProgressCallback = Callable[[int, int], None]


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ProcessedProblem:
    """One uploaded image after the automatic pipeline."""
    problem_id: str
    source_name: str
    original: bytes
    processed: bytes
    crop: Optional[Rectangle] = None
    rotation: float = 0.0
    detected_rotation: float = 0.0
    analysis: Optional[AnalysisResult] = None
    notes: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def was_processed(self) -> bool:
        return self.analysis is not None

    def apply_edit(self, commit: CommitResult):
        """Store the result of an editor commit."""
        self.processed = commit.image_bytes
        self.crop = commit.crop.copy()
        self.rotation = commit.rotation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.problem_id,
            "source": self.source_name,
            "crop": self.crop.to_dict() if self.crop else None,
            "rotation": self.rotation,
            "detected_rotation": self.detected_rotation,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "notes": self.notes,
            "timestamp": self.timestamp,
        }


@dataclass
class BatchResult:
    """Outcome of a batch run."""
    problems: List[ProcessedProblem] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": len(self.problems),
            "failed": len(self.errors),
            "cancelled": self.cancelled,
            "errors": self.errors,
            "problems": [p.to_dict() for p in self.problems],
        }


# ============================================================================
# Single Image Pipeline
# ============================================================================

def analyze_image(
    image: np.ndarray,
    config: Optional[PipelineConfig] = None,
    analyzer: Optional[ContentAnalyzer] = None
) -> AnalysisResult:
    """Run the configured content analyzer on an image."""
    config = config or PipelineConfig()
    analyzer = analyzer or create_analyzer(config.analysis)
    return analyzer.analyze(image)


def box_to_crop(
    box: Tuple[float, float, float, float],
    image_size: Tuple[int, int],
    padding: float = 20.0
) -> Rectangle:
    """
    Convert a normalized (ymin, xmin, ymax, xmax) box to a pixel rectangle.

    Args:
        box: Box on the 0-1000 scale
        image_size: (width, height) in pixels
        padding: Extra margin on each side, in normalized units

    Returns:
        Rectangle clamped to the image
    """
    width, height = image_size
    ymin, xmin, ymax, xmax = box

    y = max(0.0, (ymin - padding) / NORMALIZED_EXTENT * height)
    x = max(0.0, (xmin - padding) / NORMALIZED_EXTENT * width)
    h = min(height - y, (ymax - ymin + padding * 2) / NORMALIZED_EXTENT * height)
    w = min(width - x, (xmax - xmin + padding * 2) / NORMALIZED_EXTENT * width)

    return Rectangle(x, y, w, h)


def apply_filters(image: np.ndarray, filters: Optional[FilterConfig] = None) -> np.ndarray:
    """Run shadow removal and the scan filter as configured."""
    filters = filters or FilterConfig()
    result = image

    if filters.enable_shadow_removal:
        result = remove_shadows(result, filters.grid_cell_size, filters.dark_cell_cutoff)

    if filters.enable_scan_filter:
        result = apply_scan_filter(
            result,
            contrast_factor=filters.contrast_factor,
            brightness_offset=filters.brightness_offset,
            highlight_clip=filters.highlight_clip
        )

    return result


def auto_crop_and_straighten(
    image: np.ndarray,
    analysis: AnalysisResult,
    config: Optional[PipelineConfig] = None
) -> np.ndarray:
    """
    Crop, straighten, filter and trim an image using an analysis result.

    Args:
        image: Source image (BGR)
        analysis: Detected box and angle
        config: Pipeline configuration

    Returns:
        Final image
    """
    config = config or PipelineConfig()
    h, w = validate_image(image)

    crop = box_to_crop(analysis.box_2d, (w, h), config.crop.crop_padding)
    result = rectify(image, crop, analysis.rotation_angle, config.crop.rotation_threshold)
    result = apply_filters(result, config.filters)

    if config.filters.enable_border_trim:
        result = trim_white_borders(
            result,
            intensity_threshold=config.filters.trim_intensity_threshold,
            min_count=config.filters.trim_min_count,
            margin=config.filters.trim_margin
        )

    logger.debug(f"Auto crop {w}x{h} -> {result.shape[1]}x{result.shape[0]}")
    return result


def render_committed(
    image: np.ndarray,
    crop: Rectangle,
    rotation: float,
    config: Optional[PipelineConfig] = None
) -> np.ndarray:
    """Render a user-adjusted crop and rotation (no border trimming)."""
    config = config or PipelineConfig()
    result = rectify(image, crop, rotation, config.crop.rotation_threshold)
    return apply_filters(result, config.filters)


def process_image_bytes(
    data: bytes,
    source_name: str = "",
    config: Optional[PipelineConfig] = None,
    analyzer: Optional[ContentAnalyzer] = None
) -> ProcessedProblem:
    """
    Run the automatic pipeline on one encoded image.

    Undecodable bytes still produce a ProcessedProblem that carries the
    original bytes unchanged, with no analysis and no crop.

    Args:
        data: Encoded image bytes
        source_name: Name used in logs and manifests
        config: Pipeline configuration
        analyzer: Analyzer to reuse across calls

    Returns:
        ProcessedProblem
    """
    config = config or PipelineConfig()
    problem_id = uuid.uuid4().hex

    try:
        image = decode_image(data)
    except ImageDecodeError as e:
        logger.warning(f"{source_name or problem_id}: {e}; keeping original image")
        return ProcessedProblem(
            problem_id=problem_id,
            source_name=source_name,
            original=data,
            processed=data,
        )

    start_time = time.time()
    h, w = validate_image(image)
    analysis = analyze_image(image, config, analyzer)
    processed = auto_crop_and_straighten(image, analysis, config)
    encoded = encode_jpeg(processed, config.export.jpeg_quality)

    elapsed = time.time() - start_time
    logger.info(
        f"Processed {source_name or problem_id} ({w}x{h}) in {elapsed:.2f}s: "
        f"box={[round(v) for v in analysis.box_2d]}, angle={analysis.rotation_angle:.1f}°"
    )

    return ProcessedProblem(
        problem_id=problem_id,
        source_name=source_name,
        original=data,
        processed=encoded,
        crop=box_to_crop(analysis.box_2d, (w, h), config.crop.crop_padding),
        rotation=analysis.rotation_angle,
        detected_rotation=analysis.rotation_angle,
        analysis=analysis,
    )


# ============================================================================
# Batch Processor
# ============================================================================

class BatchProcessor:
    """
    Processes a batch of uploaded images.

    With max_workers == 1 files run strictly one after another; larger
    values use a bounded thread pool. Either way one file's failure is
    logged and recorded without stopping the batch, and the progress
    callback receives (current, total) after every finished file.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self._analyzer = None

    @property
    def analyzer(self) -> ContentAnalyzer:
        if self._analyzer is None:
            self._analyzer = create_analyzer(self.config.analysis)
        return self._analyzer

    @staticmethod
    def item_name(item: BatchItem) -> str:
        if isinstance(item, tuple):
            return item[0]
        return Path(item).name

    def process_item(self, item: BatchItem) -> ProcessedProblem:
        """Read and process a single batch item."""
        if isinstance(item, tuple):
            name, data = item
        else:
            name, data = Path(item).name, read_bytes(item)
        return process_image_bytes(data, name, self.config, self.analyzer)

    def process_files(
        self,
        items: Iterable[BatchItem],
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> BatchResult:
        """
        Process files or (name, bytes) pairs.

        Args:
            items: Paths or (name, bytes) tuples
            progress_callback: Called with (current, total) after each file
            cancel_event: When set, files that have not started are skipped

        Returns:
            BatchResult with problems in input order
        """
        items = list(items)
        progress = ProcessingProgress(total=len(items))
        results: List[Optional[ProcessedProblem]] = [None] * len(items)
        cancelled = False

        logger.info(f"Processing batch of {len(items)} file(s) with {self.config.max_workers} worker(s)")

        def finish(index: int, problem: Optional[ProcessedProblem], error: Optional[Exception]):
            name = self.item_name(items[index])
            if error is not None:
                progress.add_error(f"Error processing file {index} ({name}): {error}")
            else:
                results[index] = problem
            progress.complete_file(name)
            if progress_callback:
                progress_callback(progress.current, progress.total)

        if self.config.max_workers <= 1:
            for i, item in enumerate(items):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                try:
                    finish(i, self.process_item(item), None)
                except Exception as e:
                    finish(i, None, e)
        else:
            cancelled = self._run_pool(items, finish, cancel_event)

        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
        if cancelled:
            logger.info(f"Batch cancelled after {progress.current}/{progress.total} file(s)")

        problems = [p for p in results if p is not None]
        logger.info(
            f"Batch complete: {len(problems)} processed, {progress.failed} failed"
        )
        return BatchResult(
            problems=problems,
            errors=list(progress.errors),
            total=len(items),
            cancelled=cancelled
        )

    def _run_pool(self, items, finish, cancel_event) -> bool:
        skipped = object()
        cancelled = False

        def guarded(item):
            if cancel_event is not None and cancel_event.is_set():
                return skipped
            return self.process_item(item)

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = {executor.submit(guarded, item): i for i, item in enumerate(items)}
            try:
                for future in as_completed(futures):
                    index = futures[future]
                    try:
                        problem = future.result()
                    except Exception as e:
                        finish(index, None, e)
                        continue
                    if problem is skipped:
                        cancelled = True
                        continue
                    finish(index, problem, None)
            except KeyboardInterrupt:
                if cancel_event is not None:
                    cancel_event.set()
                executor.shutdown(wait=False, cancel_futures=True)
                raise

        return cancelled
