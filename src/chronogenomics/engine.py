"""
Chronotype analysis engine for ChronoGenomics.

Takes a Pending record, runs the (simulated) encrypted computation and moves
the record to Analyzed or Errored. Runs can be executed inline with ``run`` or
on the engine's worker pool with ``submit``.
"""

import hashlib
import random
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import psutil

from chronogenomics.codec import PayloadCodec
from chronogenomics.errors import AnalysisCancelled, InvalidState, NotFound
from chronogenomics.log import get_logger
from chronogenomics.models import AnalysisRecord, AnalysisStatus
from chronogenomics.store import RecordStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChronotypeProfile:
    """One row of the category table."""
    category: str
    schedule_start: str
    schedule_end: str
    peak_window: str


CHRONOTYPE_TABLE: List[ChronotypeProfile] = [
    ChronotypeProfile("Wolf", "23:00", "07:00", "21:00-23:00"),
    ChronotypeProfile("Bear", "22:30", "06:30", "10:00-14:00"),
    ChronotypeProfile("Lion", "21:00", "05:00", "05:00-10:00"),
    ChronotypeProfile("Dolphin", "00:30", "06:30", "10:00-12:00 & 18:00-20:00"),
]

CATEGORIES = tuple(profile.category for profile in CHRONOTYPE_TABLE)


class Classifier(ABC):
    """Maps a decoded submission onto one chronotype profile."""

    @abstractmethod
    def classify(self, payload: Dict[str, Any]) -> ChronotypeProfile:
        ...


class RandomClassifier(Classifier):
    """Uniform draw from the category table."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def classify(self, payload: Dict[str, Any]) -> ChronotypeProfile:
        return self.rng.choice(CHRONOTYPE_TABLE)


class MarkerHashClassifier(Classifier):
    """Deterministic: the same marker sequence always gets the same profile."""

    def classify(self, payload: Dict[str, Any]) -> ChronotypeProfile:
        markers = str(payload.get("dnaSequence", "")).strip().upper()
        digest = hashlib.sha256(markers.encode('utf-8')).digest()
        return CHRONOTYPE_TABLE[int.from_bytes(digest[:8], "big") % len(CHRONOTYPE_TABLE)]


CLASSIFIERS = {
    "random": RandomClassifier,
    "marker_hash": MarkerHashClassifier,
}


@dataclass
class AnalysisStats:
    """Timing and resource metrics of one analysis run."""
    total_duration_seconds: float
    computation_duration_seconds: float
    classification_duration_seconds: float
    peak_memory_mb: float
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class AnalysisResult:
    """Outcome of ``AnalysisEngine.run``."""
    record: AnalysisRecord
    stats: AnalysisStats
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.record.status is AnalysisStatus.ANALYZED


class AnalysisEngine:
    """Drives records through Pending -> Analyzed / Errored."""

    def __init__(
        self,
        store: RecordStore,
        codec: PayloadCodec,
        classifier: Optional[Classifier] = None,
        latency_seconds: float = 4.0,
        max_workers: int = 4,
    ) -> None:
        self.store = store
        self.codec = codec
        self.classifier = classifier or RandomClassifier()
        self.latency_seconds = latency_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="chrono-analysis")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, threading.Event] = {}
        self._queued: Dict[str, Future] = {}

    def __enter__(self) -> 'AnalysisEngine':
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True, cancel_running=True)

    # ============================================================================
    # RUNNING ANALYSES
    # ============================================================================

    def run(self, record_id: str) -> AnalysisResult:
        """
        Analyse one Pending record and write the result back.

        Raises ``NotFound`` for unknown ids, ``InvalidState`` if the record is
        not Pending or already being analysed, and ``AnalysisCancelled`` if
        ``cancel`` was called before the result was written (the record then
        stays Pending). Any other failure leaves the record Errored and is
        reported through ``AnalysisResult.error``.
        """
        with self._lock:
            if record_id in self._in_flight:
                raise InvalidState(record_id, "pending", f"Analysis {record_id} is already running")
            cancel_event = threading.Event()
            self._in_flight[record_id] = cancel_event

        try:
            return self._run(record_id, cancel_event)
        finally:
            with self._lock:
                self._in_flight.pop(record_id, None)

    def _run(self, record_id: str, cancel_event: threading.Event) -> AnalysisResult:
        operation_start = time.time()
        process = psutil.Process()
        peak_memory = process.memory_info().rss / 1024 / 1024  # MB

        record = self.store.get(record_id)
        if record.status is not AnalysisStatus.PENDING:
            raise InvalidState(record_id, record.status.value)

        logger.info("Processing encrypted DNA data for analysis %s", record_id)

        # Stand-in for the encrypted computation
        computation_start = time.time()
        if cancel_event.wait(self.latency_seconds):
            raise AnalysisCancelled(record_id)
        computation_duration = time.time() - computation_start

        classification_duration = 0.0
        try:
            classification_start = time.time()
            payload = self.codec.decode(record.encoded_payload)
            profile = self.classifier.classify(payload)
            classification_duration = time.time() - classification_start
            peak_memory = max(peak_memory, process.memory_info().rss / 1024 / 1024)

            if cancel_event.is_set():
                raise AnalysisCancelled(record_id)

            analysed = record.model_copy(update={
                "category": profile.category,
                "schedule_start": profile.schedule_start,
                "schedule_end": profile.schedule_end,
                "peak_window": profile.peak_window,
                "status": AnalysisStatus.ANALYZED,
            })
            stored = self.store.compare_and_set(record_id, AnalysisStatus.PENDING, analysed)
            error = None
        except (AnalysisCancelled, InvalidState, NotFound):
            raise
        except Exception as e:
            logger.error("Analysis %s failed: %s", record_id, e)
            stored = self._mark_errored(record, e)
            error = str(e)

        stats = AnalysisStats(
            total_duration_seconds=time.time() - operation_start,
            computation_duration_seconds=computation_duration,
            classification_duration_seconds=classification_duration,
            peak_memory_mb=max(peak_memory, process.memory_info().rss / 1024 / 1024),
            timestamp=datetime.now().isoformat(),
        )

        if error is None:
            logger.info("Chronotype analysis %s completed: %s", record_id, stored.category)
        return AnalysisResult(record=stored, stats=stats, error=error)

    def _mark_errored(self, record: AnalysisRecord, error: Exception) -> AnalysisRecord:
        """Move the record to Errored with empty result fields."""
        errored = record.model_copy(update={
            "category": "",
            "schedule_start": "",
            "schedule_end": "",
            "peak_window": "",
            "status": AnalysisStatus.ERRORED,
            "error": str(error) or type(error).__name__,
        })
        try:
            return self.store.compare_and_set(record.id, AnalysisStatus.PENDING, errored)
        except Exception as write_error:
            logger.error("Could not mark analysis %s as errored: %s", record.id, write_error)
            raise error from write_error

    def submit(self, record_id: str) -> 'Future[AnalysisResult]':
        """Schedule ``run`` on the worker pool and return its future."""
        future = self._executor.submit(self.run, record_id)
        with self._lock:
            self._queued[record_id] = future
        future.add_done_callback(lambda f: self._forget(record_id, f))
        return future

    def _forget(self, record_id: str, future: Future) -> None:
        with self._lock:
            if self._queued.get(record_id) is future:
                del self._queued[record_id]

    def is_running(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._in_flight

    def cancel(self, record_id: str) -> bool:
        """
        Cancel a queued or running analysis.

        Returns True if something was cancelled. A run that already wrote its
        result is unaffected.
        """
        with self._lock:
            event = self._in_flight.get(record_id)
            future = self._queued.get(record_id)

        if future is not None and future.cancel():
            return True
        if event is not None:
            event.set()
            return True
        return False

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        """Stop the worker pool, optionally cancelling runs in progress."""
        if cancel_running:
            with self._lock:
                events = list(self._in_flight.values())
            for event in events:
                event.set()
        self._executor.shutdown(wait=wait, cancel_futures=cancel_running)
