"""Read-only analytics over detection ledger snapshots.

Every query takes one snapshot of the ledger and drops records without
ground truth before doing anything else.

Daily rollups bucket by the local calendar day (``YYYY-MM-DD``) of the
process running the query. Two records stamped on the same UTC day can
land in different buckets, and records written from another time zone
are bucketed by this machine's zone rather than the writer's.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from classitrack.ledger.records import RecordFilter, local_day

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import date

    from classitrack.ledger.records import DetectionRecord, HistoryFilter
    from classitrack.ledger.store import DetectionLedger

NO_SAMPLES: float = -1.0

CSV_HEADER = "ID,Timestamp,Ground Truth,Ground Truth Index,Predicted,Predicted Index,Confidence,Is Correct,Is Verified"


@dataclass(frozen=True)
class DailyStats:
    date: date
    detection_count: int
    accuracy: float
    avg_confidence: float


@dataclass(frozen=True)
class DailyErrorStats:
    date: date
    detection_count: int
    error_count: int
    error_rate: float


@dataclass(frozen=True)
class ClassAccuracyStats:
    """Per-class accuracy; ``accuracy == NO_SAMPLES`` when the class has no records."""

    class_index: int
    sample_count: int
    accuracy: float
    error_count: int

    @property
    def has_samples(self) -> bool:
        return self.sample_count > 0


@dataclass(frozen=True)
class AccuracySummary:
    total: int
    correct: int
    incorrect: int
    accuracy: float
    error_rate: float
    verification_rate: float


def _ratio(part: int, whole: int) -> float:
    return part / whole if whole else 0.0


def _csv_text(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def _csv_bool(value: bool) -> str:
    return "true" if value else "false"


class AnalyticsEngine:
    """Query layer over a :class:`DetectionLedger`. Never mutates it."""

    def __init__(self, ledger: DetectionLedger) -> None:
        self._ledger = ledger

    # -- Filtering ----------------------------------------------------------

    def filter_records(self, record_filter: RecordFilter = RecordFilter.ALL) -> list[DetectionRecord]:
        """Records with ground truth that pass ``record_filter``, newest first."""
        return [r for r in self._ledger.records if r.has_ground_truth and record_filter.matches(r)]

    def history(self, history_filter: HistoryFilter) -> list[DetectionRecord]:
        """Records matching every active constraint of ``history_filter``."""
        return [r for r in self._ledger.records if history_filter.matches(r)]

    def records_from_last_days(self, days: int, now: datetime | None = None) -> list[DetectionRecord]:
        """Records stamped within the trailing ``days`` x 24h window."""
        cutoff = (now or datetime.now().astimezone()).astimezone() - timedelta(days=days)
        return [r for r in self.filter_records() if r.timestamp > cutoff]

    # -- Counting -----------------------------------------------------------

    def total_detections(self, record_filter: RecordFilter = RecordFilter.ALL) -> int:
        return len(self.filter_records(record_filter))

    def correct_predictions(self, record_filter: RecordFilter = RecordFilter.ALL) -> int:
        return sum(1 for r in self.filter_records(record_filter) if r.is_correct)

    def incorrect_predictions(self, record_filter: RecordFilter = RecordFilter.ALL) -> int:
        return sum(1 for r in self.filter_records(record_filter) if not r.is_correct)

    def accuracy(self, record_filter: RecordFilter = RecordFilter.ALL) -> float:
        return self.summary(record_filter).accuracy

    def error_rate(self, record_filter: RecordFilter = RecordFilter.ALL) -> float:
        return self.summary(record_filter).error_rate

    def verification_rate(self, record_filter: RecordFilter = RecordFilter.ALL) -> float:
        return self.summary(record_filter).verification_rate

    def summary(self, record_filter: RecordFilter = RecordFilter.ALL) -> AccuracySummary:
        """All counting metrics computed from a single snapshot."""
        records = self.filter_records(record_filter)
        total = len(records)
        correct = sum(1 for r in records if r.is_correct)
        verified = sum(1 for r in records if r.is_verified)
        return AccuracySummary(
            total=total,
            correct=correct,
            incorrect=total - correct,
            accuracy=_ratio(correct, total),
            error_rate=_ratio(total - correct, total),
            verification_rate=_ratio(verified, total),
        )

    # -- Per-class ----------------------------------------------------------

    def accuracy_for_class(self, class_index: int, record_filter: RecordFilter = RecordFilter.ALL) -> float:
        """Accuracy over records whose ground truth is ``class_index``; 0.0 when none."""
        records = [r for r in self.filter_records(record_filter) if r.ground_truth_index == class_index]
        return _ratio(sum(1 for r in records if r.is_correct), len(records))

    def detections_per_class(self, record_filter: RecordFilter = RecordFilter.ALL) -> dict[int, int]:
        """Ground-truth class index -> number of records."""
        counts: dict[int, int] = {}
        for record in self.filter_records(record_filter):
            counts[record.ground_truth_index] = counts.get(record.ground_truth_index, 0) + 1
        return counts

    def confusion_matrix(self, num_classes: int, record_filter: RecordFilter = RecordFilter.ALL) -> list[list[int]]:
        """``matrix[actual][predicted]`` counts; out-of-range indices are skipped."""
        matrix = [[0] * num_classes for _ in range(num_classes)]
        for record in self.filter_records(record_filter):
            actual, predicted = record.ground_truth_index, record.predicted_index
            if 0 <= actual < num_classes and 0 <= predicted < num_classes:
                matrix[actual][predicted] += 1
        return matrix

    def hardest_classes(self, num_classes: int, record_filter: RecordFilter = RecordFilter.ALL) -> list[ClassAccuracyStats]:
        """Per-class stats, lowest accuracy first; classes without samples go last."""
        records = self.filter_records(record_filter)
        stats: list[ClassAccuracyStats] = []
        for class_index in range(num_classes):
            class_records = [r for r in records if r.ground_truth_index == class_index]
            count = len(class_records)
            correct = sum(1 for r in class_records if r.is_correct)
            stats.append(
                ClassAccuracyStats(
                    class_index=class_index,
                    sample_count=count,
                    accuracy=correct / count if count else NO_SAMPLES,
                    error_count=count - correct,
                )
            )
        return sorted(stats, key=lambda s: (not s.has_samples, s.accuracy))

    # -- Daily rollups ------------------------------------------------------

    def daily_stats(
        self,
        days: int,
        record_filter: RecordFilter = RecordFilter.ALL,
        now: datetime | None = None,
    ) -> list[DailyStats]:
        """One bucket per local day for the trailing ``days`` days, oldest first."""
        stats: list[DailyStats] = []
        for day, records in self._bucket_by_day(days, record_filter, now):
            count = len(records)
            correct = sum(1 for r in records if r.is_correct)
            stats.append(
                DailyStats(
                    date=day,
                    detection_count=count,
                    accuracy=_ratio(correct, count),
                    avg_confidence=sum(r.confidence for r in records) / count if count else 0.0,
                )
            )
        return stats

    def daily_error_stats(
        self,
        days: int,
        record_filter: RecordFilter = RecordFilter.ALL,
        now: datetime | None = None,
    ) -> list[DailyErrorStats]:
        """Same buckets as :meth:`daily_stats`, reporting errors instead of accuracy."""
        stats: list[DailyErrorStats] = []
        for day, records in self._bucket_by_day(days, record_filter, now):
            count = len(records)
            errors = sum(1 for r in records if not r.is_correct)
            stats.append(
                DailyErrorStats(
                    date=day,
                    detection_count=count,
                    error_count=errors,
                    error_rate=_ratio(errors, count),
                )
            )
        return stats

    def _bucket_by_day(
        self,
        days: int,
        record_filter: RecordFilter,
        now: datetime | None,
    ) -> list[tuple[date, list[DetectionRecord]]]:
        today = local_day(now or datetime.now().astimezone())
        calendar = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
        buckets: dict[str, list[DetectionRecord]] = {day.isoformat(): [] for day in calendar}
        for record in self.filter_records(record_filter):
            bucket = buckets.get(local_day(record.timestamp).isoformat())
            if bucket is not None:
                bucket.append(record)
        return [(day, buckets[day.isoformat()]) for day in calendar]

    # -- Export -------------------------------------------------------------

    def export_json(self, record_filter: RecordFilter = RecordFilter.ALL, now: datetime | None = None) -> str:
        """Pretty-printed ``{exportDate, totalRecords, records}`` document."""
        records = self.filter_records(record_filter)
        return json.dumps(
            {
                "exportDate": (now or datetime.now().astimezone()).isoformat(),
                "totalRecords": len(records),
                "records": [r.to_dict() for r in records],
            },
            indent=2,
        )

    def export_csv(self, record_filter: RecordFilter = RecordFilter.ALL) -> str:
        """Header row plus one row per record; class names are quoted."""
        lines = [CSV_HEADER]
        lines.extend(self._csv_row(r) for r in self.filter_records(record_filter))
        return "\n".join(lines) + "\n"

    @staticmethod
    def _csv_row(record: DetectionRecord) -> str:
        fields: Sequence[str] = (
            record.id,
            record.timestamp.isoformat(),
            _csv_text(record.ground_truth_class),
            str(record.ground_truth_index),
            _csv_text(record.predicted_class),
            str(record.predicted_index),
            f"{record.confidence:.4f}",
            _csv_bool(record.is_correct),
            _csv_bool(record.is_verified),
        )
        return ",".join(fields)
