"""
Read-only views over the current record set.

Everything here is recomputed from the records passed in; nothing is cached
and nothing mutates the store.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from chronogenomics.models import AnalysisRecord, AnalysisStatus


@dataclass(frozen=True)
class CategoryShare:
    """Analysed records in one category, absolute and as a fraction."""
    count: int
    fraction: float


@dataclass
class DashboardStats:
    """Aggregated view used by dashboards."""
    total: int
    counts_by_status: Dict[AnalysisStatus, int] = field(default_factory=dict)
    counts_by_category: Dict[str, CategoryShare] = field(default_factory=dict)

    @property
    def analyzed_count(self) -> int:
        return self.counts_by_status.get(AnalysisStatus.ANALYZED, 0)

    def to_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "countsByStatus": {status.value: count for status, count in self.counts_by_status.items()},
            "countsByCategory": {
                category: {"count": share.count, "fraction": share.fraction}
                for category, share in self.counts_by_category.items()
            },
        }


def counts_by_status(records: Iterable[AnalysisRecord]) -> Dict[AnalysisStatus, int]:
    """Number of records per status; every status is present."""
    counts = {status: 0 for status in AnalysisStatus}
    for record in records:
        counts[record.status] += 1
    return counts


def counts_by_category(records: Iterable[AnalysisRecord]) -> Dict[str, CategoryShare]:
    """Category distribution over analysed records only."""
    counts: Dict[str, int] = {}
    analyzed = 0
    for record in records:
        if record.status is not AnalysisStatus.ANALYZED:
            continue
        analyzed += 1
        counts[record.category] = counts.get(record.category, 0) + 1

    denominator = max(analyzed, 1)
    return {
        category: CategoryShare(count=count, fraction=count / denominator)
        for category, count in counts.items()
    }


def filter_records(records: Sequence[AnalysisRecord], text: Optional[str] = None) -> List[AnalysisRecord]:
    """Case-insensitive substring match on category or owner, order preserved."""
    if not text:
        return list(records)

    needle = text.lower()
    return [
        record for record in records
        if needle in record.category.lower() or needle in record.owner.lower()
    ]


def compute_stats(records: Sequence[AnalysisRecord]) -> DashboardStats:
    return DashboardStats(
        total=len(records),
        counts_by_status=counts_by_status(records),
        counts_by_category=counts_by_category(records),
    )
