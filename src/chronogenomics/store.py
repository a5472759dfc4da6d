"""
Record store for ChronoGenomics.

Keeps analysis records under ``analysis_{id}`` and the ordered id index under
``analysis_keys`` on top of any ``KeyValueBackend``. All index and record
writes, and listing reads, run under the backend's transaction lock, shared by
every store on that backend, so readers never see an indexed id without its
record or the other way round.
"""

import json
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from chronogenomics.backends import KeyValueBackend
from chronogenomics.errors import InvalidState, MalformedRecord, NotFound, StorageUnavailable
from chronogenomics.log import get_logger
from chronogenomics.models import (
    INDEX_KEY,
    RECORD_KEY_PREFIX,
    AnalysisRecord,
    AnalysisStatus,
    record_key,
)

logger = get_logger(__name__)

ID_ALPHABET = string.digits + string.ascii_lowercase
ID_SUFFIX_LENGTH = 7


@dataclass
class ConsistencyReport:
    """Result of an index/record consistency audit."""
    indexed_count: int = 0
    orphan_ids: List[str] = field(default_factory=list)
    malformed_ids: List[str] = field(default_factory=list)
    duplicate_ids: List[str] = field(default_factory=list)
    unindexed_ids: List[str] = field(default_factory=list)
    index_readable: bool = True

    @property
    def is_consistent(self) -> bool:
        return (
            self.index_readable
            and not self.orphan_ids
            and not self.malformed_ids
            and not self.duplicate_ids
            and not self.unindexed_ids
        )


class RecordStore:
    """Durable keyed storage for analysis records plus the ordered key index."""

    def __init__(self, backend: KeyValueBackend, clock: Callable[[], float] = time.time) -> None:
        self.backend = backend
        self.clock = clock

    # ============================================================================
    # HELPER METHODS
    # ============================================================================

    def _generate_id(self) -> str:
        """Millisecond timestamp plus a random base36 suffix."""
        suffix = ''.join(secrets.choice(ID_ALPHABET) for _ in range(ID_SUFFIX_LENGTH))
        return f"{int(self.clock() * 1000)}-{suffix}"

    def _read_index(self, strict: bool = False) -> List[str]:
        """
        Load the id index.

        An unreadable index reads as empty (logged). With ``strict`` it raises
        instead, so a writer never replaces an index it could not parse.
        """
        raw = self.backend.get_data(INDEX_KEY)
        if not raw:
            return []

        try:
            keys = json.loads(raw.decode('utf-8'))
            if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
                raise ValueError("index is not a list of ids")
        except ValueError as e:
            if strict:
                raise StorageUnavailable(f"Analysis index is unreadable, refusing to overwrite it: {e}") from e
            logger.warning("Error parsing analysis keys: %s", e)
            return []

        return keys

    def _write_index(self, keys: List[str]) -> None:
        self.backend.set_data(INDEX_KEY, json.dumps(keys).encode('utf-8'))

    def _load(self, record_id: str) -> AnalysisRecord:
        """Fetch and parse one record, raising ``NotFound`` if absent or malformed."""
        raw = self.backend.get_data(record_key(record_id))
        if not raw:
            raise NotFound(record_id)

        try:
            return AnalysisRecord.from_bytes(record_id, raw)
        except MalformedRecord as e:
            logger.warning("Error parsing analysis data for %s: %s", record_id, e.reason)
            raise NotFound(record_id) from e

    def _write(self, record: AnalysisRecord) -> None:
        self.backend.set_data(record_key(record.id), record.to_bytes())

    # ============================================================================
    # RECORD OPERATIONS
    # ============================================================================

    def create(self, owner_id: str, encoded_payload: str) -> str:
        """Store a new Pending record and append its id to the index."""
        with self.backend.lock():
            keys = self._read_index(strict=True)
            known = set(keys)

            record_id = self._generate_id()
            while record_id in known or self.backend.get_data(record_key(record_id)):
                record_id = self._generate_id()

            record = AnalysisRecord(
                id=record_id,
                encoded_payload=encoded_payload,
                created_at=int(self.clock()),
                owner=owner_id,
            )
            self._write(record)

            try:
                self._write_index(keys + [record_id])
            except StorageUnavailable:
                # Do not leave an unindexed record behind
                try:
                    self.backend.set_data(record_key(record_id), b"")
                except StorageUnavailable:
                    logger.error("Could not roll back unindexed record %s", record_id)
                raise

        logger.debug("Created analysis %s for %s", record_id, owner_id)
        return record_id

    def get(self, record_id: str) -> AnalysisRecord:
        """Return the current record or raise ``NotFound``."""
        with self.backend.lock():
            return self._load(record_id)

    def list_all(self) -> List[AnalysisRecord]:
        """
        All records, newest first; ties keep index order.

        Indexed ids without a readable record are logged and skipped.
        """
        with self.backend.lock():
            keys = self._read_index()
            records = []
            seen = set()

            for key in keys:
                if key in seen:
                    logger.warning("Analysis %s appears more than once in the index", key)
                    continue
                seen.add(key)

                raw = self.backend.get_data(record_key(key))
                if not raw:
                    logger.warning("Analysis %s is indexed but has no stored record", key)
                    continue

                try:
                    records.append(AnalysisRecord.from_bytes(key, raw))
                except MalformedRecord as e:
                    logger.warning("Error parsing analysis data for %s: %s", key, e.reason)

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def update(self, record_id: str, record: AnalysisRecord) -> None:
        """
        Replace a record wholesale.

        The id, owner and creation time of the stored record are kept; a
        terminal record can only be rewritten with the same status and the
        same results.
        """
        with self.backend.lock():
            current = self._load(record_id)
            if current.status.is_terminal and record.status != current.status:
                raise InvalidState(
                    record_id,
                    current.status.value,
                    f"Analysis {record_id} is already {current.status.value}",
                )
            self._check_results(current, record)
            self._write(self._pin_immutables(current, record))

    def compare_and_set(
        self,
        record_id: str,
        expected_status: AnalysisStatus,
        record: AnalysisRecord,
    ) -> AnalysisRecord:
        """
        Replace a record only if its stored status is ``expected_status``.

        Raises ``InvalidState`` when the status moved on, or when the new record
        would take a terminal record back to Pending.
        """
        with self.backend.lock():
            current = self._load(record_id)
            if current.status != expected_status:
                raise InvalidState(record_id, current.status.value)
            if current.status.is_terminal and record.status is AnalysisStatus.PENDING:
                raise InvalidState(
                    record_id,
                    current.status.value,
                    f"Analysis {record_id} cannot return to pending",
                )
            self._check_results(current, record)

            stored = self._pin_immutables(current, record)
            self._write(stored)
            return stored

    @staticmethod
    def _check_results(current: AnalysisRecord, record: AnalysisRecord) -> None:
        """Result fields belong to Analyzed records and are written once."""
        results = record.result_fields()
        if record.status is not AnalysisStatus.ANALYZED and any(results.values()):
            raise InvalidState(
                current.id,
                current.status.value,
                f"Only an analyzed record can carry results, not a {record.status.value} one",
            )
        if current.status.is_terminal and results != current.result_fields():
            raise InvalidState(
                current.id,
                current.status.value,
                f"Results of analysis {current.id} are already written",
            )

    @staticmethod
    def _pin_immutables(current: AnalysisRecord, record: AnalysisRecord) -> AnalysisRecord:
        return record.model_copy(update={
            "id": current.id,
            "owner": current.owner,
            "created_at": current.created_at,
            "encoded_payload": current.encoded_payload,
        })

    # ============================================================================
    # MAINTENANCE
    # ============================================================================

    def audit(self) -> ConsistencyReport:
        """Check the index against the stored records."""
        report = ConsistencyReport()

        with self.backend.lock():
            try:
                keys = self._read_index(strict=True)
            except StorageUnavailable:
                report.index_readable = False
                return report

            report.indexed_count = len(keys)
            seen = set()
            for key in keys:
                if key in seen:
                    report.duplicate_ids.append(key)
                    continue
                seen.add(key)

                raw = self.backend.get_data(record_key(key))
                if not raw:
                    report.orphan_ids.append(key)
                    continue
                try:
                    AnalysisRecord.from_bytes(key, raw)
                except MalformedRecord:
                    report.malformed_ids.append(key)

            # Only backends that can enumerate keys reveal unindexed records
            list_keys: Optional[Callable[[], List[str]]] = getattr(self.backend, "keys", None)
            if list_keys is not None:
                for stored_key in list_keys():
                    if stored_key == INDEX_KEY or not stored_key.startswith(RECORD_KEY_PREFIX):
                        continue
                    record_id = stored_key[len(RECORD_KEY_PREFIX):]
                    if record_id not in seen:
                        report.unindexed_ids.append(record_id)

        if not report.is_consistent:
            logger.warning(
                "Store inconsistency: %d orphan, %d malformed, %d duplicate, %d unindexed",
                len(report.orphan_ids),
                len(report.malformed_ids),
                len(report.duplicate_ids),
                len(report.unindexed_ids),
            )
        return report
