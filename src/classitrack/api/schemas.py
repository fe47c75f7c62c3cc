"""Pydantic request/response schemas for the ClassiTrack API."""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from classitrack.ledger.records import RecordFilter
from classitrack.ml.color import FrameFormat

if TYPE_CHECKING:
    from classitrack.ledger.records import DetectionRecord
    from classitrack.ml.service import ClassificationResult


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class FramePlaneIn(BaseModel):
    """One plane of a raw camera frame."""

    data: str = Field(description="Base64-encoded plane bytes")
    bytes_per_row: int = Field(ge=1)
    bytes_per_pixel: int | None = Field(default=None, ge=1)


class ClassifyFrameRequest(BaseModel):
    """A raw camera frame to classify."""

    width: int = Field(ge=1)
    height: int = Field(ge=1)
    format: FrameFormat | str = Field(description="Pixel layout: 'yuv420' or 'bgra8888'")
    planes: list[FramePlaneIn] = Field(min_length=1)


class ClassificationResponse(BaseModel):
    """Top-1 prediction plus the full score vector."""

    label: str = Field(description="Label with any numeric index prefix removed")
    raw_label: str
    index: int
    confidence: float
    scores: list[float]

    @classmethod
    def from_result(cls, result: ClassificationResult) -> ClassificationResponse:
        return cls(
            label=result.display_label,
            raw_label=result.top_label,
            index=result.top_index,
            confidence=result.top_confidence,
            scores=list(result.scores),
        )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class CreateRecordRequest(BaseModel):
    """A classification outcome plus the user's ground truth."""

    ground_truth_index: int = Field(ge=-1, description="-1 saves the record without ground truth")
    predicted_index: int = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)
    scores: list[float]
    timestamp: datetime | None = None


class DetectionRecordOut(BaseModel):
    id: str
    timestamp: datetime
    ground_truth_class: str
    ground_truth_index: int
    predicted_class: str
    predicted_index: int
    confidence: float
    scores: list[float]
    is_verified: bool
    is_correct: bool

    @classmethod
    def from_record(cls, record: DetectionRecord) -> DetectionRecordOut:
        return cls(
            id=record.id,
            timestamp=record.timestamp,
            ground_truth_class=record.ground_truth_class,
            ground_truth_index=record.ground_truth_index,
            predicted_class=record.predicted_class,
            predicted_index=record.predicted_index,
            confidence=record.confidence,
            scores=list(record.scores),
            is_verified=record.is_verified,
            is_correct=record.is_correct,
        )


class RecordListResponse(BaseModel):
    total: int
    active_filters: int
    records: list[DetectionRecordOut]


class DeleteRecordsRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class DeleteRecordsResponse(BaseModel):
    deleted: int


class VerifyResponse(BaseModel):
    id: str
    is_verified: bool


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


class SummaryResponse(BaseModel):
    filter: RecordFilter
    total: int
    correct: int
    incorrect: int
    accuracy: float
    error_rate: float
    verification_rate: float


class ClassMetrics(BaseModel):
    class_index: int
    label: str
    sample_count: int
    accuracy: float = Field(description="-1.0 when the class has no samples")
    error_count: int


class ClassMetricsResponse(BaseModel):
    classes: list[ClassMetrics]


class ConfusionMatrixResponse(BaseModel):
    labels: list[str]
    matrix: list[list[int]] = Field(description="matrix[actual][predicted] = count")


class DailyStatsOut(BaseModel):
    day: date
    detection_count: int
    accuracy: float
    avg_confidence: float


class DailyErrorStatsOut(BaseModel):
    day: date
    detection_count: int
    error_count: int
    error_rate: float


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    engine_state: str
    ledger_records: int
    max_concurrent: int
    concurrent_requests: int
    queue_depth: int


class ModelInfoResponse(BaseModel):
    state: str
    labels: list[str]
    input_height: int | None = None
    input_width: int | None = None
    num_classes: int | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
