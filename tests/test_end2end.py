"""
End-to-end integration tests for the Document Rectification Pipeline.
"""

import pytest
import numpy as np
import json
import sys
import threading
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


def encode_png(image: np.ndarray) -> bytes:
    import cv2

    ok, buffer = cv2.imencode('.png', image)
    assert ok
    return buffer.tobytes()


class TestEndToEnd:
    """End-to-end integration tests."""

    @pytest.fixture
    def sample_document_image(self):
        """Create a photo-like document page: text on slightly shaded paper."""
        import cv2

        img = np.ones((1000, 800, 3), dtype=np.uint8) * 235

        # Uneven lighting from left to right
        shade = np.linspace(0, 30, 800).astype(np.uint8)
        img = img - shade[None, :, None]

        # Title
        cv2.putText(img, "Problem 7", (220, 260),
                    cv2.FONT_HERSHEY_DUPLEX, 1.5, (0, 0, 0), 2)

        # Body text
        for i, y in enumerate(range(330, 600, 30)):
            cv2.putText(img, f"Line {i + 1}: solve for x in the equation", (200, y),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, (20, 20, 20), 1)

        return img

    def test_full_pipeline(self, sample_document_image):
        """Test the complete automatic pipeline on encoded bytes."""
        from docrectify.utils.assembler import process_image_bytes
        from docrectify.utils.io import decode_image

        data = encode_png(sample_document_image)

        problem = process_image_bytes(data, "page.png")

        assert problem.was_processed
        assert problem.problem_id
        assert problem.original == data
        assert problem.processed[:2] == b'\xff\xd8'

        crop = problem.crop
        assert crop.x >= 0 and crop.y >= 0
        assert crop.right <= 800 and crop.bottom <= 1000

        # Cropped to the text and trimmed
        result = decode_image(problem.processed)
        assert result.shape[0] < 600
        assert result.shape[1] < 700

    def test_output_is_clean_scan(self, sample_document_image):
        """Test that shaded paper comes out white."""
        from docrectify.utils.assembler import process_image_bytes
        from docrectify.utils.io import decode_image

        problem = process_image_bytes(encode_png(sample_document_image), "page.png")
        result = decode_image(problem.processed)

        assert np.median(result) >= 250

    def test_undecodable_bytes_kept(self):
        """Test that bad input passes through unchanged."""
        from docrectify.utils.assembler import process_image_bytes

        problem = process_image_bytes(b"not an image", "broken.jpg")

        assert not problem.was_processed
        assert problem.processed == b"not an image"
        assert problem.crop is None
        assert problem.analysis is None

    def test_blank_page_full_frame(self):
        """Test that the fallback box keeps a blank page at full size."""
        from docrectify.utils.analysis import AnalysisResult
        from docrectify.utils.assembler import auto_crop_and_straighten

        img = np.ones((300, 200, 3), dtype=np.uint8) * 255

        result = auto_crop_and_straighten(img, AnalysisResult.fallback())

        assert result.shape == img.shape

    def test_box_to_crop(self):
        from docrectify.utils.assembler import box_to_crop

        rect = box_to_crop((100, 200, 500, 600), (1000, 1000), padding=20)

        assert rect.x == pytest.approx(180)
        assert rect.y == pytest.approx(80)
        assert rect.width == pytest.approx(440)
        assert rect.height == pytest.approx(440)

    def test_box_to_crop_clamped(self):
        from docrectify.utils.assembler import box_to_crop

        rect = box_to_crop((0, 0, 1000, 1000), (640, 480), padding=20)

        assert (rect.x, rect.y) == (0, 0)
        assert rect.width == pytest.approx(640)
        assert rect.height == pytest.approx(480)

    def test_filters_disabled(self):
        """Test that disabling both filters keeps colors."""
        from docrectify.config import FilterConfig
        from docrectify.utils.assembler import apply_filters

        img = np.zeros((64, 64, 3), dtype=np.uint8)
        img[:, :] = (200, 100, 50)

        result = apply_filters(img, FilterConfig(enable_shadow_removal=False, enable_scan_filter=False))

        np.testing.assert_array_equal(result, img)


class TestBatchProcessing:
    """Test batch isolation, progress, ordering and cancellation."""

    @pytest.fixture
    def page_bytes(self):
        import cv2

        img = np.ones((300, 400, 3), dtype=np.uint8) * 255
        for y in range(100, 220, 25):
            cv2.putText(img, "x + 2 = 5", (80, y), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 0, 0), 2)
        return encode_png(img)

    def test_failure_isolated(self, page_bytes, tmp_path):
        """Test that one failing file does not stop the batch."""
        from docrectify.utils.assembler import BatchProcessor

        calls = []
        items = [("a.png", page_bytes), tmp_path / "missing.png", ("c.png", page_bytes)]

        result = BatchProcessor().process_files(items, progress_callback=lambda c, t: calls.append((c, t)))

        assert [p.source_name for p in result.problems] == ["a.png", "c.png"]
        assert len(result.errors) == 1
        assert "missing.png" in result.errors[0]
        assert calls == [(1, 3), (2, 3), (3, 3)]
        assert not result.cancelled

    def test_encode_failure_isolated(self, page_bytes, monkeypatch):
        """Test that an output encoding failure is recorded and the batch continues."""
        import cv2
        from docrectify.utils.assembler import BatchProcessor

        real_imencode = cv2.imencode
        calls = []

        def fail_first(*args, **kwargs):
            calls.append(args[0])
            if len(calls) == 1:
                return False, None
            return real_imencode(*args, **kwargs)

        monkeypatch.setattr(cv2, "imencode", fail_first)

        result = BatchProcessor().process_files([("a.png", page_bytes), ("b.png", page_bytes)])

        assert [p.source_name for p in result.problems] == ["b.png"]
        assert len(result.errors) == 1
        assert "a.png" in result.errors[0]
        assert "JPEG encoding failed" in result.errors[0]
        assert result.problems[0].processed[:2] == b"\xff\xd8"
        assert not result.cancelled

    def test_undecodable_in_batch(self, page_bytes):
        from docrectify.utils.assembler import BatchProcessor

        result = BatchProcessor().process_files([("a.png", page_bytes), ("b.png", b"garbage")])

        assert len(result.problems) == 2
        assert result.problems[1].processed == b"garbage"
        assert not result.errors

    def test_worker_pool_keeps_order(self, page_bytes):
        from docrectify.config import PipelineConfig
        from docrectify.utils.assembler import BatchProcessor

        config = PipelineConfig(max_workers=3)
        items = [(f"p{i}.png", page_bytes) for i in range(5)]
        calls = []

        result = BatchProcessor(config).process_files(items, progress_callback=lambda c, t: calls.append(c))

        assert [p.source_name for p in result.problems] == [f"p{i}.png" for i in range(5)]
        assert sorted(calls) == [1, 2, 3, 4, 5]

    def test_cancel_between_files(self, page_bytes):
        """Test that setting the event stops before the next file."""
        from docrectify.utils.assembler import BatchProcessor

        cancel = threading.Event()
        items = [(f"p{i}.png", page_bytes) for i in range(3)]

        result = BatchProcessor().process_files(
            items,
            progress_callback=lambda c, t: cancel.set(),
            cancel_event=cancel
        )

        assert result.cancelled
        assert len(result.problems) == 1
        assert result.total == 3

    def test_cancel_before_pool_starts(self, page_bytes):
        from docrectify.config import PipelineConfig
        from docrectify.utils.assembler import BatchProcessor

        cancel = threading.Event()
        cancel.set()

        result = BatchProcessor(PipelineConfig(max_workers=2)).process_files(
            [("a.png", page_bytes), ("b.png", page_bytes)], cancel_event=cancel
        )

        assert result.cancelled
        assert result.problems == []

    def test_batch_result_serializable(self, page_bytes, tmp_path):
        from docrectify.utils.assembler import BatchProcessor
        from docrectify.utils.io import save_json, load_json

        result = BatchProcessor().process_files([("a.png", page_bytes)])
        path = save_json(result.to_dict(), tmp_path / "batch.json")

        loaded = load_json(path)
        assert loaded["processed"] == 1
        assert loaded["problems"][0]["source"] == "a.png"
        assert len(loaded["problems"][0]["analysis"]["box_2d"]) == 4


class TestEditorCommit:
    """Test committing an edit session back onto a problem."""

    @pytest.fixture
    def page(self):
        img = np.ones((1000, 800, 3), dtype=np.uint8) * 255
        img[300:600, 200:600] = 0
        return img

    def test_commit_crop(self, page):
        from docrectify.utils.geometry import CropSession
        from docrectify.utils.io import decode_image

        session = CropSession((800, 1000))

        commit = session.commit(page)

        assert commit.rotation == 0.0
        assert decode_image(commit.image_bytes).shape == (940, 740, 3)

    def test_commit_quarter_turn(self, page):
        from docrectify.utils.geometry import CropSession
        from docrectify.utils.io import decode_image

        session = CropSession((800, 1000))
        session.rotate_quarter()

        commit = session.commit(page)

        assert commit.rotation == 90.0
        assert decode_image(commit.image_bytes).shape == (740, 940, 3)

    def test_apply_edit(self, page):
        from docrectify.utils.assembler import process_image_bytes
        from docrectify.utils.geometry import CropSession

        problem = process_image_bytes(encode_png(page), "page.png")
        session = CropSession((800, 1000), crop=problem.crop, rotation=problem.rotation)
        session.pointer_down((400, 500))
        session.pointer_move((420, 500))
        session.pointer_up()

        commit = session.commit(page)
        problem.apply_edit(commit)

        assert problem.processed == commit.image_bytes
        assert problem.crop == commit.crop
        assert problem.crop is not commit.crop
        assert problem.detected_rotation == problem.rotation


class TestConfiguration:
    """Test configuration building."""

    def test_from_options(self):
        from docrectify.config import PipelineConfig

        config = PipelineConfig.from_options({
            "paddingPx": 5,
            "minSizePx": 40,
            "enableScanFilter": False,
            "contrastFactor": 1.2,
            "unknownOption": 1,
        })

        assert config.analysis.padding_px == 5
        assert config.editor.min_size_px == 40
        assert config.filters.enable_scan_filter is False
        assert config.filters.contrast_factor == 1.2

    def test_environment_overrides(self, monkeypatch):
        from docrectify.config import get_config

        monkeypatch.setenv("DOCRECTIFY_WORKERS", "3")
        monkeypatch.setenv("DOCRECTIFY_ANALYZER", "Density")
        monkeypatch.setenv("DOCRECTIFY_NO_SCAN_FILTER", "true")

        config = get_config()

        assert config.max_workers == 3
        assert config.analysis.method == "density"
        assert config.filters.enable_scan_filter is False

    def test_invalid_worker_count_ignored(self, monkeypatch):
        from docrectify.config import get_config

        monkeypatch.setenv("DOCRECTIFY_WORKERS", "many")

        assert get_config().max_workers == 1


class TestCommandLine:
    """Test the command-line pipeline."""

    @pytest.fixture
    def input_folder(self, tmp_path):
        import cv2

        folder = tmp_path / "photos"
        folder.mkdir()
        img = np.ones((400, 300, 3), dtype=np.uint8) * 255
        cv2.putText(img, "2x = 8", (60, 200), cv2.FONT_HERSHEY_SIMPLEX, 1.0, (0, 0, 0), 2)
        cv2.imwrite(str(folder / "page.png"), img)
        (folder / "notes.txt").write_text("not an image")
        return folder

    def test_run_pipeline(self, input_folder, tmp_path):
        from docrectify.cli import setup_argparser, run_pipeline

        output = tmp_path / "out"
        args = setup_argparser().parse_args([
            "--input", str(input_folder),
            "--output", str(output),
            "--quiet",
            "--debug",
        ])

        assert run_pipeline(args) == 0

        assert (output / "page.jpg").exists()
        assert (output / "debug" / "page_crop.png").exists()

        with open(output / "manifest.json", encoding="utf-8") as f:
            manifest = json.load(f)
        assert manifest["total"] == 1
        assert manifest["problems"][0]["output"] == "page.jpg"

    def test_unsupported_input(self, tmp_path):
        from docrectify.cli import setup_argparser, run_pipeline

        missing = tmp_path / "nothing.pdf"
        args = setup_argparser().parse_args(["-i", str(missing), "-o", str(tmp_path / "out"), "-q"])

        assert run_pipeline(args) == 1


class TestImageIO:
    """Test decoding, encoding and file discovery."""

    def test_decode_grayscale_to_bgr(self):
        from docrectify.utils.io import decode_image

        gray = np.full((20, 30), 128, dtype=np.uint8)

        img = decode_image(encode_png(gray))

        assert img.shape == (20, 30, 3)
        assert img.dtype == np.uint8

    def test_decode_16bit(self):
        from docrectify.utils.io import decode_image

        deep = np.full((10, 10, 3), 65535, dtype=np.uint16)

        img = decode_image(encode_png(deep))

        assert img.dtype == np.uint8
        assert img.max() == 255

    def test_decode_errors(self):
        from docrectify.utils.io import decode_image, ImageDecodeError

        with pytest.raises(ImageDecodeError):
            decode_image(b"")
        with pytest.raises(ImageDecodeError):
            decode_image(b"\x00\x01\x02")

    def test_encode_empty_image(self):
        from docrectify.utils.io import encode_jpeg
        from docrectify.utils.images import EmptyImageError

        with pytest.raises(EmptyImageError):
            encode_jpeg(np.zeros((0, 5, 3), dtype=np.uint8))

    def test_encode_failure(self, monkeypatch):
        """Test that a failed JPEG encode raises instead of returning bytes."""
        import cv2
        from docrectify.utils.io import encode_jpeg
        from docrectify.utils.images import SurfaceAcquisitionError

        monkeypatch.setattr(cv2, "imencode", lambda *args, **kwargs: (False, None))

        result = None
        with pytest.raises(SurfaceAcquisitionError):
            result = encode_jpeg(np.ones((10, 10, 3), dtype=np.uint8) * 255)
        assert result is None

    def test_load_and_discover(self, tmp_path):
        import cv2
        from docrectify.utils.io import load_image, list_image_files, detect_input_type

        img = np.ones((12, 16, 3), dtype=np.uint8) * 255
        cv2.imwrite(str(tmp_path / "b.png"), img)
        cv2.imwrite(str(tmp_path / "a.JPG"), img)
        (tmp_path / "readme.md").write_text("x")

        assert [p.name for p in list_image_files(tmp_path)] == ["a.JPG", "b.png"]
        assert load_image(tmp_path / "b.png").shape == (12, 16, 3)
        assert detect_input_type(tmp_path) == "image_folder"
        assert detect_input_type(tmp_path / "b.png") == "image"
        assert detect_input_type(tmp_path / "readme.md") == "unknown"

        with pytest.raises(FileNotFoundError):
            load_image(tmp_path / "missing.png")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
