"""Detection records and the filters that select them."""

from __future__ import annotations

import dataclasses
import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from classitrack.ml.engine import select_top

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from classitrack.ml.service import ClassificationResult

# Tolerance when matching a reported confidence against its score entry.
_SCORE_TOLERANCE = 1e-6


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _expect(data: dict[str, Any], key: str, kind: type) -> Any:
    """Return ``data[key]`` if it has the persisted JSON type ``kind``.

    JSON booleans are never accepted as numbers.
    """
    value = data[key]
    if kind is float:
        valid = _is_number(value)
    elif kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, kind)
    if not valid:
        raise TypeError(f"{key} must be {kind.__name__}, got {type(value).__name__}")
    return value


def local_day(value: date | datetime) -> date:
    """Calendar day of ``value`` in the local time zone.

    Aware datetimes are converted to local time first; naive datetimes
    are taken as already local.
    """
    if isinstance(value, datetime):
        return (value.astimezone() if value.tzinfo is not None else value).date()
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class DetectionRecord:
    """One classification outcome with the user-supplied ground truth.

    A negative ``ground_truth_index`` marks a record saved without ground
    truth. Such records never count toward accuracy, confusion matrices,
    rollups, history, or exports.
    """

    id: str
    timestamp: datetime
    ground_truth_class: str
    ground_truth_index: int
    predicted_class: str
    predicted_index: int
    confidence: float
    scores: tuple[float, ...] = field(default=())
    is_verified: bool = False

    def __post_init__(self) -> None:
        if math.isnan(self.confidence) or not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0.0, 1.0], got {self.confidence}")
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))
        object.__setattr__(self, "confidence", float(self.confidence))
        object.__setattr__(self, "scores", tuple(float(s) for s in self.scores))

    @property
    def is_correct(self) -> bool:
        return self.ground_truth_index == self.predicted_index

    @property
    def has_ground_truth(self) -> bool:
        return self.ground_truth_index >= 0

    def with_verified(self) -> DetectionRecord:
        """Return a copy marked as verified."""
        if self.is_verified:
            return self
        return dataclasses.replace(self, is_verified=True)

    # -- Construction -------------------------------------------------------

    @classmethod
    def create(
        cls,
        *,
        ground_truth_class: str,
        ground_truth_index: int,
        predicted_class: str,
        predicted_index: int,
        confidence: float,
        scores: Iterable[float],
        timestamp: datetime | None = None,
    ) -> DetectionRecord:
        """Build a new record with a fresh id, stamped now unless given."""
        return cls(
            id=uuid.uuid4().hex,
            timestamp=timestamp if timestamp is not None else datetime.now(UTC),
            ground_truth_class=ground_truth_class,
            ground_truth_index=ground_truth_index,
            predicted_class=predicted_class,
            predicted_index=predicted_index,
            confidence=confidence,
            scores=tuple(scores),
        )

    @classmethod
    def from_result(
        cls,
        result: ClassificationResult,
        ground_truth_index: int,
        labels: Sequence[str],
        timestamp: datetime | None = None,
    ) -> DetectionRecord:
        """Build a record from a classification and the user's ground truth.

        Args:
            result: Output of the classification service.
            ground_truth_index: Index into ``labels``, or -1 for no ground truth.
            labels: Display labels in model output order.
            timestamp: Override for the creation instant.

        Raises:
            ValueError: If the score vector or ground-truth index does not fit
                ``labels``, or the prediction is not the top-1 of the scores.
        """
        if len(result.scores) != len(labels):
            raise ValueError(f"Score vector has {len(result.scores)} entries, expected {len(labels)}")
        if ground_truth_index >= len(labels) or ground_truth_index < -1:
            raise ValueError(f"Ground truth index {ground_truth_index} out of range")
        top_index, _ = select_top(result.scores)
        if result.top_index != top_index:
            raise ValueError(f"Predicted index {result.top_index} is not the top score (index {top_index})")
        if not math.isclose(
            result.top_confidence, result.scores[top_index], rel_tol=_SCORE_TOLERANCE, abs_tol=_SCORE_TOLERANCE
        ):
            raise ValueError(
                f"Confidence {result.top_confidence} does not match top score {result.scores[top_index]}"
            )

        ground_truth_class = labels[ground_truth_index] if ground_truth_index >= 0 else ""
        return cls.create(
            ground_truth_class=ground_truth_class,
            ground_truth_index=ground_truth_index,
            predicted_class=result.display_label,
            predicted_index=result.top_index,
            confidence=result.top_confidence,
            scores=result.scores,
            timestamp=timestamp,
        )

    # -- Wire format --------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "groundTruthClass": self.ground_truth_class,
            "groundTruthIndex": self.ground_truth_index,
            "predictedClass": self.predicted_class,
            "predictedIndex": self.predicted_index,
            "confidence": self.confidence,
            "scores": list(self.scores),
            "isVerified": self.is_verified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectionRecord:
        """Build a record from its wire form, rejecting values of the wrong JSON type.

        Raises:
            KeyError: If a required key is missing.
            TypeError: If a value has the wrong type.
            ValueError: If a value is out of range or the timestamp is unparsable.
        """
        scores = _expect(data, "scores", list)
        if not all(_is_number(s) for s in scores):
            raise TypeError("scores must hold only numbers")
        is_verified = data.get("isVerified", False)
        if not isinstance(is_verified, bool):
            raise TypeError(f"isVerified must be bool, got {type(is_verified).__name__}")
        return cls(
            id=_expect(data, "id", str),
            timestamp=datetime.fromisoformat(_expect(data, "timestamp", str)),
            ground_truth_class=_expect(data, "groundTruthClass", str),
            ground_truth_index=_expect(data, "groundTruthIndex", int),
            predicted_class=_expect(data, "predictedClass", str),
            predicted_index=_expect(data, "predictedIndex", int),
            confidence=float(_expect(data, "confidence", float)),
            scores=tuple(float(s) for s in scores),
            is_verified=is_verified,
        )

    def encode(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def decode(cls, source: str) -> DetectionRecord:
        """Decode one persisted record.

        Raises:
            ValueError: On malformed JSON, missing keys, or bad values.
        """
        try:
            data = json.loads(source)
            if not isinstance(data, dict):
                raise TypeError(f"expected an object, got {type(data).__name__}")
            return cls.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed detection record: {exc}") from exc


class RecordFilter(StrEnum):
    """Verification-state selector."""

    ALL = "all"
    VERIFIED = "verified"
    NOT_VERIFIED = "not_verified"

    @property
    def label(self) -> str:
        return _FILTER_LABELS[self]

    def matches(self, record: DetectionRecord) -> bool:
        if self is RecordFilter.VERIFIED:
            return record.is_verified
        if self is RecordFilter.NOT_VERIFIED:
            return not record.is_verified
        return True


_FILTER_LABELS = {
    RecordFilter.ALL: "All",
    RecordFilter.VERIFIED: "Verified",
    RecordFilter.NOT_VERIFIED: "Not Verified",
}


@dataclass(frozen=True)
class HistoryFilter:
    """Compound history filter. ``None`` means no constraint on that field.

    All active constraints must hold. Dates are compared as local calendar
    days and both bounds are inclusive.
    """

    verification: RecordFilter = RecordFilter.ALL
    class_index: int | None = None
    is_correct: bool | None = None
    search_query: str | None = None
    start_date: date | None = None
    end_date: date | None = None

    def replace(self, **changes: Any) -> HistoryFilter:
        """Copy with ``changes`` applied; pass ``None`` to clear a field."""
        return dataclasses.replace(self, **changes)

    @property
    def has_active_filters(self) -> bool:
        return self.active_filter_count > 0

    @property
    def active_filter_count(self) -> int:
        """Number of active constraints; a date range counts once."""
        return sum(
            (
                self.verification is not RecordFilter.ALL,
                self.class_index is not None,
                self.is_correct is not None,
                bool(self.search_query),
                self.start_date is not None or self.end_date is not None,
            )
        )

    def matches(self, record: DetectionRecord) -> bool:
        if not record.has_ground_truth:
            return False
        if not self.verification.matches(record):
            return False
        if self.class_index is not None and record.ground_truth_index != self.class_index:
            return False
        if self.is_correct is not None and record.is_correct != self.is_correct:
            return False
        if self.search_query:
            query = self.search_query.lower()
            if query not in record.predicted_class.lower() and query not in record.ground_truth_class.lower():
                return False
        if self.start_date is not None or self.end_date is not None:
            day = local_day(record.timestamp)
            if self.start_date is not None and day < local_day(self.start_date):
                return False
            if self.end_date is not None and day > local_day(self.end_date):
                return False
        return True
