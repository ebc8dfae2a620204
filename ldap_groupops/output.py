"""
Structured job output.

Progress events and the terminal result are written as JSON lines so a
calling process can follow a job while it runs.
"""

import json
import sys
import logging
from typing import Any, Callable, Dict, IO, List, Optional

from ldap_groupops.models import JobResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


def no_progress(fraction: float, status: str) -> None:
    """Progress callback that discards events."""
    return None


def scaled(start: float, end: float, done: int, total: int) -> float:
    """Map ``done`` of ``total`` onto the [start, end] sub-range of a progress bar."""
    if total <= 0:
        return end
    return start + (end - start) * (done / total)


class JsonLinesEmitter:
    """Writes progress events and the final result as one JSON object per line."""

    def __init__(self, stream: Optional[IO[str]] = None):
        self.stream = stream or sys.stdout
        self.events: List[Dict[str, Any]] = []
        self._last_fraction = 0.0

    def progress(self, fraction: float, status: str) -> None:
        # Progress never moves backwards and stays within [0, 1]
        fraction = min(1.0, max(self._last_fraction, float(fraction)))
        self._last_fraction = fraction
        self._write({'type': 'progress', 'progress': round(fraction, 4), 'status': status})

    def result(self, job_result: JobResult) -> None:
        self._write(job_result.to_dict())

    def _write(self, event: Dict[str, Any]) -> None:
        self.events.append(event)
        self.stream.write(json.dumps(event, default=str) + '\n')
        self.stream.flush()
