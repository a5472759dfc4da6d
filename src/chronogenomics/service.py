"""
Client-facing service for ChronoGenomics.

This is the stateless surface a presentation layer talks to: submit a payload,
trigger its analysis, list records and read dashboard statistics. Every
mutating call publishes pending / success / error progress notices that clear
themselves after a configurable delay.
"""

import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from chronogenomics.backends import FileBackend, HttpBackend, HttpBackendConfig, KeyValueBackend, MemoryBackend
from chronogenomics.codec import PayloadCodec, SimulatedFHECodec
from chronogenomics.config import ConfigManager
from chronogenomics.engine import CLASSIFIERS, AnalysisEngine, AnalysisResult
from chronogenomics.errors import UserRejected
from chronogenomics.log import configure_logging, get_logger
from chronogenomics.models import AnalysisRecord, Submission
from chronogenomics.query import DashboardStats, compute_stats, filter_records
from chronogenomics.store import RecordStore
from chronogenomics.validation import read_payload_file, validate_submission

logger = get_logger(__name__)

# Called with (action, subject, owner) before a mutation; raises UserRejected to abort.
Authorizer = Callable[[str, str, str], None]

PENDING = "pending"
SUCCESS = "success"
ERROR = "error"


@dataclass(frozen=True)
class ProgressNotice:
    """A transient progress message for the presentation layer."""
    state: str
    message: str
    posted_at: float
    expires_at: Optional[float] = None

    def is_visible(self, now: float) -> bool:
        return self.expires_at is None or now < self.expires_at


class NotificationCenter:
    """Holds the current progress notice; success and error notices expire."""

    def __init__(
        self,
        success_seconds: float = 2.0,
        error_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        history_size: int = 50,
    ) -> None:
        self.success_seconds = success_seconds
        self.error_seconds = error_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._current: Optional[ProgressNotice] = None
        self.history: Deque[ProgressNotice] = deque(maxlen=history_size)

    def _post(self, state: str, message: str, lifetime: Optional[float]) -> ProgressNotice:
        now = self.clock()
        notice = ProgressNotice(
            state=state,
            message=message,
            posted_at=now,
            expires_at=None if lifetime is None else now + lifetime,
        )
        with self._lock:
            self._current = notice
            self.history.append(notice)
        return notice

    def pending(self, message: str) -> ProgressNotice:
        return self._post(PENDING, message, None)

    def success(self, message: str) -> ProgressNotice:
        return self._post(SUCCESS, message, self.success_seconds)

    def error(self, message: str) -> ProgressNotice:
        return self._post(ERROR, message, self.error_seconds)

    def current(self) -> Optional[ProgressNotice]:
        """The notice to display now, or None once it has expired."""
        with self._lock:
            notice = self._current
            if notice is not None and not notice.is_visible(self.clock()):
                self._current = None
                notice = None
        return notice


class ChronotypeService:
    """Submit, analyze, list and aggregate chronotype analyses."""

    def __init__(
        self,
        store: RecordStore,
        engine: AnalysisEngine,
        codec: Optional[PayloadCodec] = None,
        notifications: Optional[NotificationCenter] = None,
        config_manager: Optional[ConfigManager] = None,
        authorize: Optional[Authorizer] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.codec = codec or engine.codec
        self.notifications = notifications or NotificationCenter()
        self.config_manager = config_manager
        self.authorize = authorize

    # ============================================================================
    # HELPER METHODS
    # ============================================================================

    def _authorize(self, action: str, subject: str, owner: str) -> None:
        if self.authorize is not None:
            self.authorize(action, subject, owner)

    def _log_audit_event(self, event_type: str, **kwargs) -> None:
        """Log audit event with consistent structure."""
        if self.config_manager is not None:
            self.config_manager.log_audit_event(event_type, kwargs)

    @staticmethod
    def _build_submission(raw_payload: str, metadata: Dict[str, Any]) -> Submission:
        return Submission(
            dna_sequence=raw_payload,
            lifestyle=metadata.get("lifestyle", "balanced"),
            age_range=metadata.get("age_range", metadata.get("ageRange", "25-35")),
        )

    def _report_result(self, record_id: str, result: AnalysisResult) -> None:
        if result.succeeded:
            self.notifications.success("FHE chronotype analysis completed successfully!")
        else:
            self.notifications.error(f"Analysis failed: {result.error or 'Unknown error'}")

        self._log_audit_event("record_analyze",
            record_id=record_id,
            status=result.record.status.value,
            category=result.record.category,
            duration_seconds=result.stats.total_duration_seconds,
            success=result.succeeded,
            error=result.error,
        )

    def _report_failure(self, action: str, event_type: str, record_id: str, error: BaseException) -> None:
        if isinstance(error, UserRejected):
            self.notifications.error("Transaction rejected by user")
        else:
            self.notifications.error(f"{action} failed: {str(error) or 'Unknown error'}")

        self._log_audit_event(event_type,
            record_id=record_id,
            success=False,
            rejected=isinstance(error, UserRejected),
            error=str(error),
        )

    # ============================================================================
    # CLIENT OPERATIONS
    # ============================================================================

    def submit(self, owner_id: str, raw_payload: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Encode a plaintext payload and store it as a new Pending record."""
        metadata = dict(metadata or {})
        self.notifications.pending("Encrypting DNA data with FHE for privacy-preserving analysis...")

        try:
            submission = self._build_submission(raw_payload, metadata)
            validate_submission(submission)
            self._authorize("submit", owner_id, owner_id)

            extra = {k: v for k, v in metadata.items() if k not in ("lifestyle", "age_range", "ageRange")}
            encoded = self.codec.encode(submission.dna_sequence, {**submission.metadata(), **extra})
            record_id = self.store.create(owner_id, encoded)
        except Exception as e:
            self._report_failure("Submission", "record_submit", "", e)
            raise

        self.notifications.success("DNA data encrypted and submitted for FHE analysis!")
        self._log_audit_event("record_submit",
            record_id=record_id,
            owner=owner_id,
            payload_size=len(encoded),
            success=True,
        )
        return record_id

    def submit_file(self, owner_id: str, payload_path: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Submit the marker sequence stored in a plain or gzip-compressed file."""
        return self.submit(owner_id, read_payload_file(payload_path), metadata)

    def analyze(self, record_id: str) -> AnalysisRecord:
        """
        Run the analysis for one Pending record and wait for it.

        Analysis failures come back as an Errored record; unknown ids, non-Pending
        records, cancellation and rejected authorization raise.
        """
        self.notifications.pending("Processing encrypted DNA data with FHE computation...")

        try:
            self._authorize("analyze", record_id, self.store.get(record_id).owner)
            result = self.engine.run(record_id)
        except Exception as e:
            self._report_failure("Analysis", "record_analyze", record_id, e)
            raise

        self._report_result(record_id, result)
        return result.record

    def analyze_async(self, record_id: str) -> 'Future[AnalysisResult]':
        """Schedule the analysis on the engine's worker pool."""
        self.notifications.pending("Processing encrypted DNA data with FHE computation...")

        try:
            self._authorize("analyze", record_id, self.store.get(record_id).owner)
        except Exception as e:
            self._report_failure("Analysis", "record_analyze", record_id, e)
            raise

        def on_done(future: Future) -> None:
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                self._report_failure("Analysis", "record_analyze", record_id, error)
            else:
                self._report_result(record_id, future.result())

        future = self.engine.submit(record_id)
        future.add_done_callback(on_done)
        return future

    def get(self, record_id: str) -> AnalysisRecord:
        return self.store.get(record_id)

    def list(self, filter_text: Optional[str] = None) -> List[AnalysisRecord]:
        """Records newest first, optionally filtered by category or owner."""
        return filter_records(self.store.list_all(), filter_text)

    def stats(self) -> DashboardStats:
        return compute_stats(self.store.list_all())

    def close(self) -> None:
        self.engine.shutdown(wait=True, cancel_running=True)


def build_backend(settings: Dict[str, Any]) -> KeyValueBackend:
    """Create the persistence backend named in the configuration."""
    backend_name = settings["storage_backend"]

    if backend_name == "memory":
        return MemoryBackend()
    if backend_name == "file":
        return FileBackend(settings["storage_dir"])
    if backend_name == "http":
        http_config = HttpBackendConfig.from_env()
        http_config.base_url = settings["storage_url"]
        http_config.timeout = int(settings["storage_timeout"])
        return HttpBackend(http_config)

    raise ValueError(f"Unknown storage backend: {backend_name}")


def build_service(
    config_manager: Optional[ConfigManager] = None,
    authorize: Optional[Authorizer] = None,
) -> ChronotypeService:
    """Wire a service from the configuration."""
    config_manager = config_manager or ConfigManager()
    settings = config_manager.get_config()
    configure_logging(settings["log_level"])

    classifier_name = settings["classifier"]
    if classifier_name not in CLASSIFIERS:
        raise ValueError(f"Unknown classifier: {classifier_name}")

    store = RecordStore(build_backend(settings))
    codec = SimulatedFHECodec()
    engine = AnalysisEngine(
        store,
        codec,
        classifier=CLASSIFIERS[classifier_name](),
        latency_seconds=float(settings["analysis_latency_seconds"]),
        max_workers=int(settings["max_parallel_analyses"]),
    )
    notifications = NotificationCenter(
        success_seconds=float(settings["success_notice_seconds"]),
        error_seconds=float(settings["error_notice_seconds"]),
    )

    logger.debug("Built service with %s backend and %s classifier", settings["storage_backend"], classifier_name)
    return ChronotypeService(
        store,
        engine,
        codec=codec,
        notifications=notifications,
        config_manager=config_manager,
        authorize=authorize,
    )
