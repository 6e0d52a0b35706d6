import time

import numpy as np
import pytest
from scipy import ndimage
from skimage.registration import phase_cross_correlation
from skimage.transform import SimilarityTransform

from astrolab import pipeline
from astrolab.config import Settings
from astrolab.errors import AlignmentTimeoutError, InsufficientFeaturesError
from astrolab.pipeline import AlignmentMetric, align_frames, summarize_alignment
from astrolab.register import Registration

from conftest import make_frame, random_stars, render_star_field, shifted


def _fake_registration(rms=0.1):
    return Registration(
        transform=SimilarityTransform(),
        source_points=np.zeros((4, 2)),
        target_points=np.zeros((4, 2)),
        rms_error_px=rms,
    )


def _fake_register_pair(frame, reference, **kwargs):
    if frame.source == "bad":
        raise InsufficientFeaturesError("too few sources")
    return frame.with_data(frame.data + 1.0), _fake_registration()


def _series(*names):
    return [make_frame(np.full((8, 8), float(i), dtype=np.float32), OBJECT=name) for i, name in enumerate(names)]


class TestAlignFrames:
    def test_single_frame_is_identity(self, reference_frame):
        stack = align_frames([reference_frame])
        assert len(stack) == 1
        assert stack[0] is reference_frame
        assert stack.metrics[0].success

    def test_array_reference_is_returned_as_given(self, monkeypatch):
        reference = np.zeros((8, 8), dtype=np.float32)
        assert align_frames([reference])[0] is reference

        monkeypatch.setattr(pipeline, "register_pair", _fake_register_pair)
        stack = align_frames([reference, np.ones((8, 8), dtype=np.float32)])
        assert stack[0] is reference
        assert stack.reference.shape == (8, 8)
        assert stack.common_valid_mask().all()

    def test_empty_series_raises(self):
        with pytest.raises(ValueError):
            align_frames([])

    def test_invalid_policy_raises(self, reference_frame):
        with pytest.raises(ValueError):
            align_frames([reference_frame, reference_frame], on_error="ignore")

    def test_invalid_workers_raises(self, reference_frame):
        settings = Settings()
        settings.pipeline.workers = 0
        with pytest.raises(ValueError):
            align_frames([reference_frame, reference_frame], settings)

    def test_end_to_end_translation(self):
        stars = random_stars(seed=5)
        clean = render_star_field(stars)
        dynamic_range = float(clean.max() - clean.min())
        noise = 0.01 * dynamic_range
        reference = make_frame(render_star_field(stars, noise=noise, seed=20), OBJECT="ref")
        moving = make_frame(render_star_field(shifted(stars, 5, -3), noise=noise, seed=21), OBJECT="mov")

        stack = align_frames([reference, moving])

        assert len(stack) == 2
        assert stack[0] is reference
        assert stack[1].shape == reference.shape
        valid = ndimage.binary_erosion(stack.common_valid_mask(), iterations=3)
        error = np.abs(stack[1].data - reference.data)[valid]
        assert float(np.mean(error)) < 0.03 * dynamic_range
        assert stack.metrics[1].success
        assert stack.metrics[1].matched_stars >= 3

    def test_cross_correlation_offset_within_one_pixel(self, reference_frame, translated_frame):
        stack = align_frames([reference_frame, translated_frame])
        valid = stack.common_valid_mask()
        ref = np.where(valid, reference_frame.data - 100.0, 0.0)
        moved = np.where(valid, stack[1].data - 100.0, 0.0)
        offset, _, _ = phase_cross_correlation(ref, moved, upsample_factor=10)
        assert np.all(np.abs(offset) < 1.0)

    def test_raise_policy_aborts_with_index(self, monkeypatch):
        monkeypatch.setattr(pipeline, "register_pair", _fake_register_pair)
        with pytest.raises(InsufficientFeaturesError) as info:
            align_frames(_series("ref", "ok", "bad", "ok"))
        assert info.value.index == 2
        assert str(info.value).startswith("frame 2:")

    def test_keep_policy_keeps_unregistered_frame(self, monkeypatch):
        monkeypatch.setattr(pipeline, "register_pair", _fake_register_pair)
        frames = _series("ref", "ok", "bad", "ok")
        stack = align_frames(frames, on_error="keep")
        assert len(stack) == 4
        assert stack[2] is frames[2]
        assert [m.success for m in stack.metrics] == [True, True, False, True]
        assert stack.failures[0].index == 2
        assert "too few sources" in stack.failures[0].error

    def test_drop_policy_omits_frame(self, monkeypatch):
        monkeypatch.setattr(pipeline, "register_pair", _fake_register_pair)
        stack = align_frames(_series("ref", "ok", "bad", "ok2"), on_error="drop")
        assert [f.source for f in stack] == ["ref", "ok", "ok2"]
        assert len(stack.metrics) == 4
        assert stack.summary()["success_ratio"] == pytest.approx(0.75)

    def test_policy_from_settings(self, monkeypatch):
        monkeypatch.setattr(pipeline, "register_pair", _fake_register_pair)
        settings = Settings()
        settings.pipeline.on_error = "drop"
        stack = align_frames(_series("ref", "bad"), settings)
        assert len(stack) == 1

    def test_parallel_preserves_order(self, monkeypatch):
        def slow_first(frame, reference, **kwargs):
            if frame.source == "a":
                time.sleep(0.2)
            return _fake_register_pair(frame, reference)

        monkeypatch.setattr(pipeline, "register_pair", slow_first)
        stack = align_frames(_series("ref", "a", "b", "c"), workers=3)
        assert [f.source for f in stack] == ["ref", "a", "b", "c"]
        assert [m.index for m in stack.metrics] == [0, 1, 2, 3]

    def test_timeout_drop(self, monkeypatch):
        def stuck(frame, reference, **kwargs):
            time.sleep(1.0)
            return _fake_register_pair(frame, reference)

        monkeypatch.setattr(pipeline, "register_pair", stuck)
        stack = align_frames(_series("ref", "slow"), on_error="drop", timeout_s=0.05)
        assert len(stack) == 1
        assert not stack.metrics[1].success

    def test_timeout_only_affects_the_slow_frame(self, monkeypatch):
        def slow_second(frame, reference, **kwargs):
            if frame.source == "slow":
                time.sleep(1.0)
            return _fake_register_pair(frame, reference)

        monkeypatch.setattr(pipeline, "register_pair", slow_second)
        frames = _series("ref", "slow", "fast1", "fast2")
        stack = align_frames(frames, on_error="keep", timeout_s=0.3)
        assert [m.success for m in stack.metrics] == [True, False, True, True]
        assert "exceeded" in stack.metrics[1].error
        assert stack[1] is frames[1]
        assert [f.source for f in stack] == ["ref", "slow", "fast1", "fast2"]

    def test_timeout_raise(self, monkeypatch):
        def stuck(frame, reference, **kwargs):
            time.sleep(1.0)
            return _fake_register_pair(frame, reference)

        monkeypatch.setattr(pipeline, "register_pair", stuck)
        with pytest.raises(AlignmentTimeoutError) as info:
            align_frames(_series("ref", "slow"), timeout_s=0.05)
        assert info.value.index == 1

    def test_report_is_json_ready(self, monkeypatch):
        monkeypatch.setattr(pipeline, "register_pair", _fake_register_pair)
        report = align_frames(_series("ref", "ok")).report()
        assert report["n_frames"] == 2
        assert report["reference"] == "ref"
        assert report["per_frame"][1]["rms_error_px"] == pytest.approx(0.1)


class TestSummarizeAlignment:
    def test_empty(self):
        summary = summarize_alignment([])
        assert summary["success_ratio"] == 0.0
        assert np.isnan(summary["mean_rms_px"])

    def test_mixed(self):
        metrics = [
            AlignmentMetric(index=0, success=True, rms_error_px=0.0, matched_stars=0),
            AlignmentMetric(index=1, success=True, rms_error_px=0.4, matched_stars=12),
            AlignmentMetric(index=2, success=False, rms_error_px=None, matched_stars=0, error="x"),
        ]
        summary = summarize_alignment(metrics)
        assert summary["success_ratio"] == pytest.approx(2 / 3)
        assert summary["mean_rms_px"] == pytest.approx(0.2)
        assert summary["median_rms_px"] == pytest.approx(0.2)
