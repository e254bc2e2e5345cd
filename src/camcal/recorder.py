"""
JSONL record of a calibration session.

One header line with the session metadata, one line per event, one footer
line with the event count. Lines are written by a background thread so
detector workers never wait on disk I/O.
"""

import json
import queue
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

EVENT_TYPES = (
    "camera_started",
    "camera_stopped",
    "calibration_armed",
    "calibration_disarmed",
    "observation_added",
    "recalibrated",
    "estimation_failed",
    "model_override",
    "stream_connected",
    "stream_disconnected",
)


class SessionRecorder:
    """Writes session events to <log_dir>/<session_name>.jsonl."""

    SCHEMA_VERSION = "1.0"

    def __init__(self, log_dir: str = "./logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._recording = False
        self._log_file: Optional[Path] = None
        self._file_handle = None
        self._lock = threading.Lock()
        self._write_queue: queue.Queue = queue.Queue()
        self._writer_thread: Optional[threading.Thread] = None
        self._start_time: Optional[str] = None
        self._event_count = 0

    def start_recording(
        self,
        session_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Open a new log file and return its path (RuntimeError if already recording)."""
        with self._lock:
            if self._recording:
                raise RuntimeError("Recording already in progress")

            now = datetime.now()
            self._start_time = now.isoformat()
            name = session_name or now.strftime("calib_%Y%m%d_%H%M%S")
            self._log_file = self.log_dir / f"{name}.jsonl"
            self._file_handle = open(self._log_file, 'w', encoding='utf-8')
            self._file_handle.write(json.dumps({
                "_type": "header",
                "schema_version": self.SCHEMA_VERSION,
                "session_start": self._start_time,
                "metadata": metadata or {},
            }) + '\n')
            self._event_count = 0
            self._recording = True

            self._writer_thread = threading.Thread(
                target=self._writer_loop, name="camcal-recorder", daemon=True
            )
            self._writer_thread.start()
            return str(self._log_file)

    def stop_recording(self) -> Dict[str, Any]:
        """Flush queued events, write the footer and close the file."""
        with self._lock:
            if not self._recording:
                return {"status": "not_recording"}
            self._recording = False

            self._write_queue.put(None)
            if self._writer_thread:
                self._writer_thread.join(timeout=5.0)

            end_time = datetime.now().isoformat()
            self._file_handle.write(json.dumps({
                "_type": "footer",
                "session_end": end_time,
                "total_events": self._event_count,
            }) + '\n')
            self._file_handle.close()

            summary = {
                "log_file": str(self._log_file),
                "start_time": self._start_time,
                "end_time": end_time,
                "total_events": self._event_count,
            }
            self._log_file = None
            self._file_handle = None
            self._event_count = 0
            return summary

    def log_event(self, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> None:
        """
        Queue one event.

        Raises:
            RuntimeError: If not recording
            ValueError: On an event type outside EVENT_TYPES
        """
        if not self._recording:
            raise RuntimeError("Not currently recording")
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {event_type!r}")

        entry = {
            "_type": "event",
            "event_type": event_type,
            "timestamp": datetime.now().isoformat(),
            "data": event_data or {},
        }
        with self._lock:
            self._event_count += 1
        self._write_queue.put(entry)

    def _writer_loop(self) -> None:
        while True:
            entry = self._write_queue.get()
            if entry is None:
                return
            self._file_handle.write(json.dumps(entry) + '\n')
            self._file_handle.flush()

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def current_log_file(self) -> Optional[str]:
        return str(self._log_file) if self._log_file else None


def read_session_log(path: str) -> Dict[str, Any]:
    """
    Read a recorded session.

    Returns:
        {"header": dict | None, "events": [...], "footer": dict | None}

    Raises:
        ValueError: If a line is not valid JSON
    """
    header = None
    footer = None
    events: List[Dict[str, Any]] = []
    with open(path, 'r', encoding='utf-8') as fp:
        for lineno, line in enumerate(fp, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{lineno}: invalid JSON line") from exc
            kind = entry.get("_type")
            if kind == "header":
                header = entry
            elif kind == "footer":
                footer = entry
            else:
                events.append(entry)
    return {"header": header, "events": events, "footer": footer}
