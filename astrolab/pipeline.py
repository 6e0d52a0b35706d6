"""Alignment of an ordered frame series onto its first frame."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field
from typing import Any, Iterator, Optional, Sequence, Union

import numpy as np

from .config import ON_ERROR_POLICIES, PipelineSettings, Settings
from .errors import AlignmentError, AlignmentTimeoutError
from .io import Frame, as_frame
from .register import Registration, register_pair

logger = logging.getLogger(__name__)

Outcome = Union[tuple[Frame, Registration], AlignmentError]


@dataclass
class AlignmentMetric:
    """Per-frame registration quality details."""

    index: int
    success: bool
    rms_error_px: Optional[float]
    matched_stars: int
    error: Optional[str] = None


@dataclass
class AlignedStack:
    """Frames registered onto a common grid; index 0 is the reference exactly as given."""

    frames: list[Union[Frame, np.ndarray]]
    metrics: list[AlignmentMetric] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.frames)

    def __getitem__(self, index):
        return self.frames[index]

    def __iter__(self) -> Iterator[Union[Frame, np.ndarray]]:
        return iter(self.frames)

    @property
    def reference(self) -> Frame:
        return as_frame(self.frames[0])

    @property
    def failures(self) -> list[AlignmentMetric]:
        return [m for m in self.metrics if not m.success]

    def common_valid_mask(self) -> np.ndarray:
        """Pixels with data in every frame that shares the reference shape."""
        mask = np.ones(self.reference.shape, dtype=bool)
        for item in self.frames:
            frame = as_frame(item)
            if frame.shape == mask.shape:
                mask &= frame.valid_mask
        return mask

    def summary(self) -> dict[str, float]:
        return summarize_alignment(self.metrics)

    def report(self) -> dict:
        """JSON-ready alignment report."""
        return {
            "n_frames": len(self.frames),
            "reference": self.reference.source,
            "summary": self.summary(),
            "per_frame": [asdict(m) for m in self.metrics],
        }


@dataclass
class _RegistrationJob:
    index: int
    frame: Frame
    future: Optional[Future] = None
    started_at: Optional[float] = None
    started: threading.Event = field(default_factory=threading.Event)

    def run(self, reference: Frame, options: dict[str, Any]) -> tuple[Frame, Registration]:
        self.started_at = time.monotonic()
        self.started.set()
        return register_pair(self.frame, reference, **options)

    def result(self, timeout_s: Optional[float]) -> tuple[Frame, Registration]:
        """Wait for the registration; ``timeout_s`` counts from the moment it started running."""
        if timeout_s is None:
            return self.future.result()
        self.started.wait()
        remaining = self.started_at + timeout_s - time.monotonic()
        return self.future.result(timeout=max(0.0, remaining))


def _register_sequentially(
    series: list[Frame], reference: Frame, options: dict[str, Any]
) -> Iterator[tuple[int, Frame, Outcome]]:
    for i, frame in enumerate(series[1:], start=1):
        try:
            outcome = register_pair(frame, reference, **options)
        except AlignmentError as exc:
            outcome = exc
        yield i, frame, outcome


def _register_concurrently(
    series: list[Frame],
    reference: Frame,
    options: dict[str, Any],
    workers: int,
    timeout_s: Optional[float],
) -> Iterator[tuple[int, Frame, Outcome]]:
    """Register frames on a thread pool, yielding outcomes in input order.

    A timed-out registration cannot be interrupted and keeps its worker busy.
    Frames still queued at that point are moved to a fresh pool so that their
    own time budget starts only when they actually run.
    """
    jobs = [_RegistrationJob(index=i, frame=frame) for i, frame in enumerate(series[1:], start=1)]
    executors: list[ThreadPoolExecutor] = []

    def submit(pending: list[_RegistrationJob]) -> None:
        executor = ThreadPoolExecutor(max_workers=workers)
        executors.append(executor)
        for job in pending:
            job.future = executor.submit(job.run, reference, options)

    submit(jobs)
    try:
        for position, job in enumerate(jobs):
            try:
                outcome = job.result(timeout_s)
            except FutureTimeoutError:
                outcome = AlignmentTimeoutError(f"Registration exceeded {timeout_s} s.", index=job.index)
                executors[-1].shutdown(wait=False, cancel_futures=True)
                queued = [j for j in jobs[position + 1 :] if j.future.cancelled()]
                if queued:
                    logger.debug("Moving %d queued frame(s) to a fresh worker pool", len(queued))
                    submit(queued)
            except AlignmentError as exc:
                outcome = exc
            yield job.index, job.frame, outcome
    finally:
        for executor in executors:
            executor.shutdown(wait=False, cancel_futures=True)


def _metric_from_registration(index: int, registration: Registration) -> AlignmentMetric:
    return AlignmentMetric(
        index=index,
        success=True,
        rms_error_px=registration.rms_error_px,
        matched_stars=registration.matched_stars,
    )


def _handle_failure(
    exc: AlignmentError,
    index: int,
    frame: Frame,
    on_error: str,
    aligned: list,
    metrics: list[AlignmentMetric],
) -> None:
    if exc.index is None:
        exc.index = index
    metrics.append(
        AlignmentMetric(index=index, success=False, rms_error_px=None, matched_stars=0, error=str(exc))
    )
    if on_error == "raise":
        logger.error("Alignment aborted at frame %d: %s", index, exc)
        raise exc
    logger.warning("Alignment failed for frame %d (%s), policy=%s", index, exc, on_error)
    if on_error == "keep":
        aligned.append(frame)


def align_frames(
    frames: Sequence[Frame | np.ndarray],
    settings: Optional[Settings] = None,
    *,
    on_error: Optional[str] = None,
    workers: Optional[int] = None,
    timeout_s: Optional[float] = None,
) -> AlignedStack:
    """Register every frame onto the first one, preserving input order.

    Element 0 of the result is ``frames[0]`` itself. ``on_error`` selects what
    happens when a frame cannot be registered: ``"raise"`` aborts the whole
    series, ``"keep"`` keeps the unregistered frame, ``"drop"`` leaves it out.
    Failures are always recorded in the stack metrics. ``timeout_s`` bounds
    each frame's registration from the moment it starts running.
    """
    if not frames:
        raise ValueError("No frames available for registration.")

    settings = settings or Settings()
    pipeline: PipelineSettings = settings.pipeline
    on_error = on_error or pipeline.on_error
    workers = workers or pipeline.workers
    timeout_s = timeout_s if timeout_s is not None else pipeline.timeout_s
    if on_error not in ON_ERROR_POLICIES:
        raise ValueError(f"on_error must be one of {ON_ERROR_POLICIES}, got '{on_error}'")
    if workers < 1:
        raise ValueError("workers must be at least 1.")

    series = [as_frame(f, source=f"frame[{i}]") for i, f in enumerate(frames)]
    reference = series[0]
    aligned: list[Union[Frame, np.ndarray]] = [frames[0]]
    metrics = [AlignmentMetric(index=0, success=True, rms_error_px=0.0, matched_stars=0)]

    if len(series) == 1:
        return AlignedStack(frames=aligned, metrics=metrics)

    options = asdict(settings.registration)
    logger.info(
        "Aligning %d frame(s) onto %s (workers=%d, on_error=%s)",
        len(series) - 1,
        reference.source or "frame 0",
        workers,
        on_error,
    )

    if workers == 1 and timeout_s is None:
        outcomes = _register_sequentially(series, reference, options)
    else:
        outcomes = _register_concurrently(series, reference, options, workers, timeout_s)

    try:
        for i, frame, outcome in outcomes:
            if isinstance(outcome, AlignmentError):
                _handle_failure(outcome, i, frame, on_error, aligned, metrics)
                continue
            registered, registration = outcome
            aligned.append(registered)
            metrics.append(_metric_from_registration(i, registration))
    finally:
        outcomes.close()

    stack = AlignedStack(frames=aligned, metrics=metrics)
    summary = stack.summary()
    logger.info(
        "Alignment finished: %d/%d frame(s) registered, mean rms %.3f px",
        sum(1 for m in metrics if m.success),
        len(metrics),
        summary["mean_rms_px"],
    )
    return stack


def summarize_alignment(metrics: list[AlignmentMetric]) -> dict[str, float]:
    """Compute summary quality metrics for reporting."""
    if not metrics:
        return {"success_ratio": 0.0, "mean_rms_px": float("nan"), "median_rms_px": float("nan")}

    success = [m for m in metrics if m.success]
    rms_values = [m.rms_error_px for m in success if m.rms_error_px is not None]

    success_ratio = len(success) / len(metrics)
    if not rms_values:
        return {"success_ratio": success_ratio, "mean_rms_px": float("nan"), "median_rms_px": float("nan")}

    return {
        "success_ratio": float(success_ratio),
        "mean_rms_px": float(np.mean(rms_values)),
        "median_rms_px": float(np.median(rms_values)),
    }
