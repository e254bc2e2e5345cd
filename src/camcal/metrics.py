"""
Metrics module for monitoring a calibration session.

Provides functionality to:
- Track delivered frame rate and frame-source buffer fill
- Count calibration samples (accepted / skipped on a full pool)
- Count detections and misses
- Track reprojection error of successive calibration solves
- Export metrics for visualization (JSON, Prometheus format)
"""

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class CalibrationMetrics:
    """Metrics of the calibration solves."""
    solves: int = 0
    refinements: int = 0
    failures: int = 0
    last_error: Optional[float] = None
    best_error: Optional[float] = None
    errors: List[float] = field(default_factory=list)


class SessionMetrics:
    """
    Thread-safe metrics collector for a calibration session.

    Usage:
        metrics = SessionMetrics()

        # Record each delivered frame
        metrics.record_frame(buffer_fill=0.25)

        # Record a calibration solve
        metrics.record_calibration(0.42, refining=True)

        summary = metrics.get_summary()
    """

    def __init__(self, history_size: int = 60):
        """
        Initialize metrics collector.

        Args:
            history_size: Number of frames to keep for rolling averages
        """
        self.history_size = history_size
        self._lock = threading.Lock()
        self._start_time = time.time()

        self._frame_times: deque = deque(maxlen=history_size)
        self._buffer_fills: deque = deque(maxlen=history_size)
        self._frame_count = 0

        self._samples_accepted = 0
        self._samples_skipped = 0
        self._detections = 0
        self._misses = 0
        self._calibration = CalibrationMetrics()

    def record_frame(self, buffer_fill: float = 0.0) -> float:
        """
        Record a delivered frame.

        Args:
            buffer_fill: Frame-source buffer fill in [0, 1]

        Returns:
            Current rolling fps
        """
        with self._lock:
            self._frame_count += 1
            self._frame_times.append(time.time())
            self._buffer_fills.append(float(buffer_fill))
            return self._fps_locked()

    def record_sample(self, accepted: bool) -> None:
        """Record a calibration sample; rejected ones were skipped by a full pool."""
        with self._lock:
            if accepted:
                self._samples_accepted += 1
            else:
                self._samples_skipped += 1

    def record_detection(self, found: bool) -> None:
        with self._lock:
            if found:
                self._detections += 1
            else:
                self._misses += 1

    def record_calibration(self, reprojection_error: float, refining: bool) -> None:
        """
        Record a successful calibration solve.

        Args:
            reprojection_error: RMS error in pixels
            refining: Solve was seeded by the previous model
        """
        with self._lock:
            cal = self._calibration
            cal.solves += 1
            if refining:
                cal.refinements += 1
            cal.last_error = float(reprojection_error)
            if cal.best_error is None or cal.last_error < cal.best_error:
                cal.best_error = cal.last_error
            cal.errors.append(cal.last_error)

            # Keep only last 1000 errors for memory
            if len(cal.errors) > 1000:
                cal.errors = cal.errors[-1000:]

    def record_calibration_failure(self) -> None:
        with self._lock:
            self._calibration.failures += 1

    def _fps_locked(self) -> float:
        if len(self._frame_times) >= 2:
            time_span = self._frame_times[-1] - self._frame_times[0]
            if time_span > 0:
                return (len(self._frame_times) - 1) / time_span
        return 0.0

    def get_summary(self) -> Dict[str, Any]:
        """
        Get a complete metrics summary.

        Returns:
            Dictionary containing all metrics
        """
        with self._lock:
            fill_avg = 0.0
            if self._buffer_fills:
                fill_avg = sum(self._buffer_fills) / len(self._buffer_fills)
            cal = self._calibration
            return {
                "timestamp": datetime.now().isoformat(),
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "stream": {
                    "fps": round(self._fps_locked(), 2),
                    "total_frames": self._frame_count,
                    "buffer_fill_avg": round(fill_avg, 3),
                },
                "sampling": {
                    "accepted": self._samples_accepted,
                    "skipped": self._samples_skipped,
                    "detections": self._detections,
                    "misses": self._misses,
                },
                "calibration": {
                    "solves": cal.solves,
                    "refinements": cal.refinements,
                    "failures": cal.failures,
                    "last_error": None if cal.last_error is None else round(cal.last_error, 4),
                    "best_error": None if cal.best_error is None else round(cal.best_error, 4),
                },
            }

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        summary = self.get_summary()
        cal = summary["calibration"]

        lines = [
            "# HELP camcal_frames_total Total frames delivered",
            "# TYPE camcal_frames_total counter",
            f"camcal_frames_total {summary['stream']['total_frames']}",
            "",
            "# HELP camcal_fps Current frames per second",
            "# TYPE camcal_fps gauge",
            f"camcal_fps {summary['stream']['fps']}",
            "",
            "# HELP camcal_buffer_fill Average frame buffer fill ratio",
            "# TYPE camcal_buffer_fill gauge",
            f"camcal_buffer_fill {summary['stream']['buffer_fill_avg']}",
            "",
            "# HELP camcal_samples_total Calibration samples by outcome",
            "# TYPE camcal_samples_total counter",
            f'camcal_samples_total{{outcome="accepted"}} {summary["sampling"]["accepted"]}',
            f'camcal_samples_total{{outcome="skipped"}} {summary["sampling"]["skipped"]}',
            "",
            "# HELP camcal_detections_total Chessboard detections by outcome",
            "# TYPE camcal_detections_total counter",
            f'camcal_detections_total{{outcome="found"}} {summary["sampling"]["detections"]}',
            f'camcal_detections_total{{outcome="miss"}} {summary["sampling"]["misses"]}',
            "",
            "# HELP camcal_calibrations_total Calibration solves",
            "# TYPE camcal_calibrations_total counter",
            f"camcal_calibrations_total {cal['solves']}",
            f"camcal_calibration_failures_total {cal['failures']}",
        ]
        if cal["last_error"] is not None:
            lines.extend([
                "",
                "# HELP camcal_reprojection_error_rms RMS reprojection error in pixels",
                "# TYPE camcal_reprojection_error_rms gauge",
                f"camcal_reprojection_error_rms {cal['last_error']}",
            ])

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._frame_times.clear()
            self._buffer_fills.clear()
            self._frame_count = 0
            self._samples_accepted = 0
            self._samples_skipped = 0
            self._detections = 0
            self._misses = 0
            self._calibration = CalibrationMetrics()
            self._start_time = time.time()


class MetricsExporter:
    """
    Export metrics to file.
    """

    @staticmethod
    def to_json(metrics: Dict[str, Any], filepath: str) -> None:
        """Write metrics to JSON file."""
        with open(filepath, 'w') as f:
            json.dump(metrics, f, indent=2)

    @staticmethod
    def to_jsonl(metrics: Dict[str, Any], filepath: str) -> None:
        """Append metrics as JSONL line."""
        with open(filepath, 'a') as f:
            f.write(json.dumps(metrics) + '\n')
