"""API route definitions."""

from __future__ import annotations

import base64
import binascii
from datetime import date, datetime
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.concurrency import run_in_threadpool

from classitrack.api.middleware import verify_api_key
from classitrack.api.schemas import (
    ClassificationResponse,
    ClassifyFrameRequest,
    ClassMetrics,
    ClassMetricsResponse,
    ConfusionMatrixResponse,
    CreateRecordRequest,
    DailyErrorStatsOut,
    DailyStatsOut,
    DeleteRecordsRequest,
    DeleteRecordsResponse,
    DetectionRecordOut,
    ErrorResponse,
    HealthResponse,
    ModelInfoResponse,
    RecordListResponse,
    SummaryResponse,
    VerifyResponse,
)
from classitrack.errors import ModelUnavailableError
from classitrack.ledger.records import DetectionRecord, HistoryFilter, RecordFilter
from classitrack.ml.color import CameraFrame, FramePlane
from classitrack.ml.service import ClassificationResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from classitrack.config import Settings
    from classitrack.ledger.analytics import AnalyticsEngine
    from classitrack.ledger.store import DetectionLedger
    from classitrack.ml.inference import InferencePool
    from classitrack.ml.service import ClassificationService

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

FilterQuery = Annotated[RecordFilter, Query(alias="filter")]
DaysQuery = Annotated[int, Query(ge=1, le=366)]

_UNAVAILABLE = {status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_classifier(request: Request) -> ClassificationService:
    classifier: ClassificationService = request.app.state.classifier
    return classifier


def _get_ledger(request: Request) -> DetectionLedger:
    ledger: DetectionLedger = request.app.state.ledger
    return ledger


def _get_analytics(request: Request) -> AnalyticsEngine:
    analytics: AnalyticsEngine = request.app.state.analytics
    return analytics


async def _run_classification(
    request: Request,
    func: Callable[[Any], ClassificationResult | None],
    payload: object,
) -> ClassificationResponse:
    classifier = _get_classifier(request)
    try:
        result = await _get_inference_pool(request).run(func, payload)
    except TimeoutError:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full") from None
    if result is None:
        if classifier.model_unavailable:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Model unavailable")
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, "Input could not be classified")
    return ClassificationResponse.from_result(result)


async def _labels(request: Request) -> list[str]:
    """Display labels, loading the model first if needed."""
    engine = _get_classifier(request).engine
    if not engine.is_ready:
        try:
            await _get_inference_pool(request).run(engine.load)
        except TimeoutError:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full") from None
        except ModelUnavailableError:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Model unavailable") from None
    return engine.display_labels


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@router.post(
    "/classify-image",
    response_model=ClassificationResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        **_UNAVAILABLE,
    },
    summary="Classify a still image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassificationResponse:
    """Decode an uploaded image and return the top-1 prediction."""
    settings = _get_settings(request)
    image_bytes = await file.read()
    if len(image_bytes) > settings.max_file_size:
        raise HTTPException(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "Image file too large")
    return await _run_classification(request, _get_classifier(request).classify_still, image_bytes)


@router.post(
    "/classify-frame",
    response_model=ClassificationResponse,
    responses={status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Classify a raw camera frame",
)
async def classify_frame(request: Request, body: ClassifyFrameRequest) -> ClassificationResponse:
    """Convert a raw YUV420 or BGRA8888 frame and return the top-1 prediction."""
    try:
        planes = tuple(
            FramePlane(
                data=base64.b64decode(plane.data, validate=True),
                bytes_per_row=plane.bytes_per_row,
                bytes_per_pixel=plane.bytes_per_pixel,
            )
            for plane in body.planes
        )
    except binascii.Error:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, "Plane data is not valid base64") from None
    frame = CameraFrame(width=body.width, height=body.height, format=body.format, planes=planes)
    return await _run_classification(request, _get_classifier(request).classify_frame, frame)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@router.post(
    "/records",
    status_code=status.HTTP_201_CREATED,
    response_model=DetectionRecordOut,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        **_UNAVAILABLE,
    },
    summary="Save a classification outcome",
)
async def create_record(request: Request, body: CreateRecordRequest) -> DetectionRecordOut:
    """Store a prediction together with the user's ground truth."""
    labels = await _labels(request)
    engine = _get_classifier(request).engine
    result = ClassificationResult(
        top_label=engine.label_for(body.predicted_index),
        top_index=body.predicted_index,
        top_confidence=body.confidence,
        scores=tuple(body.scores),
    )
    try:
        record = DetectionRecord.from_result(result, body.ground_truth_index, labels, timestamp=body.timestamp)
    except ValueError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc)) from None
    await run_in_threadpool(_get_ledger(request).insert, record)
    return DetectionRecordOut.from_record(record)


@router.get("/records", response_model=RecordListResponse, summary="Search the detection history")
async def list_records(
    request: Request,
    verification: Annotated[RecordFilter, Query()] = RecordFilter.ALL,
    class_index: Annotated[int | None, Query(ge=0)] = None,
    is_correct: bool | None = None,
    q: Annotated[str | None, Query(description="Case-insensitive class name search")] = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> RecordListResponse:
    """Return records matching every supplied constraint, newest first."""
    history_filter = HistoryFilter(
        verification=verification,
        class_index=class_index,
        is_correct=is_correct,
        search_query=q,
        start_date=start_date,
        end_date=end_date,
    )
    records = _get_analytics(request).history(history_filter)
    return RecordListResponse(
        total=len(records),
        active_filters=history_filter.active_filter_count,
        records=[DetectionRecordOut.from_record(r) for r in records],
    )


@router.get(
    "/records/{record_id}",
    response_model=DetectionRecordOut,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Fetch one record",
)
async def get_record(request: Request, record_id: str) -> DetectionRecordOut:
    record = _get_ledger(request).get(record_id)
    if record is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Record {record_id} not found")
    return DetectionRecordOut.from_record(record)


@router.delete("/records/{record_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete one record")
async def delete_record(request: Request, record_id: str) -> Response:
    """Delete a record. Unknown ids are ignored."""
    await run_in_threadpool(_get_ledger(request).delete, record_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/records/delete", response_model=DeleteRecordsResponse, summary="Delete several records")
async def delete_records(request: Request, body: DeleteRecordsRequest) -> DeleteRecordsResponse:
    deleted = await run_in_threadpool(_get_ledger(request).delete_many, body.ids)
    return DeleteRecordsResponse(deleted=deleted)


@router.post(
    "/records/{record_id}/verify",
    response_model=VerifyResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Mark a record as verified",
)
async def verify_record(request: Request, record_id: str) -> VerifyResponse:
    if not await run_in_threadpool(_get_ledger(request).verify, record_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Record {record_id} not found")
    return VerifyResponse(id=record_id, is_verified=True)


@router.delete("/records", status_code=status.HTTP_204_NO_CONTENT, summary="Delete every record")
async def clear_records(request: Request) -> Response:
    await run_in_threadpool(_get_ledger(request).clear)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


@router.get("/analytics/summary", response_model=SummaryResponse, summary="Accuracy and error totals")
async def analytics_summary(request: Request, record_filter: FilterQuery = RecordFilter.ALL) -> SummaryResponse:
    summary = _get_analytics(request).summary(record_filter)
    return SummaryResponse(
        filter=record_filter,
        total=summary.total,
        correct=summary.correct,
        incorrect=summary.incorrect,
        accuracy=summary.accuracy,
        error_rate=summary.error_rate,
        verification_rate=summary.verification_rate,
    )


@router.get(
    "/analytics/per-class",
    response_model=ClassMetricsResponse,
    responses=_UNAVAILABLE,
    summary="Accuracy per class, in label order",
)
async def analytics_per_class(request: Request, record_filter: FilterQuery = RecordFilter.ALL) -> ClassMetricsResponse:
    labels = await _labels(request)
    stats = _get_analytics(request).hardest_classes(len(labels), record_filter)
    return ClassMetricsResponse(
        classes=[
            ClassMetrics(
                class_index=s.class_index,
                label=labels[s.class_index],
                sample_count=s.sample_count,
                # Unranked view: a class with no samples reads as 0%.
                accuracy=s.accuracy if s.has_samples else 0.0,
                error_count=s.error_count,
            )
            for s in sorted(stats, key=lambda s: s.class_index)
        ]
    )


@router.get(
    "/analytics/hardest-classes",
    response_model=ClassMetricsResponse,
    responses=_UNAVAILABLE,
    summary="Classes ranked from lowest accuracy",
)
async def analytics_hardest_classes(
    request: Request, record_filter: FilterQuery = RecordFilter.ALL
) -> ClassMetricsResponse:
    labels = await _labels(request)
    stats = _get_analytics(request).hardest_classes(len(labels), record_filter)
    return ClassMetricsResponse(
        classes=[
            ClassMetrics(
                class_index=s.class_index,
                label=labels[s.class_index],
                sample_count=s.sample_count,
                accuracy=s.accuracy,
                error_count=s.error_count,
            )
            for s in stats
        ]
    )


@router.get(
    "/analytics/confusion-matrix",
    response_model=ConfusionMatrixResponse,
    responses=_UNAVAILABLE,
    summary="Confusion matrix over all classes",
)
async def analytics_confusion_matrix(
    request: Request, record_filter: FilterQuery = RecordFilter.ALL
) -> ConfusionMatrixResponse:
    labels = await _labels(request)
    matrix = _get_analytics(request).confusion_matrix(len(labels), record_filter)
    return ConfusionMatrixResponse(labels=labels, matrix=matrix)


@router.get("/analytics/daily", response_model=list[DailyStatsOut], summary="Daily detections and accuracy")
async def analytics_daily(
    request: Request, days: DaysQuery = 7, record_filter: FilterQuery = RecordFilter.ALL
) -> list[DailyStatsOut]:
    return [
        DailyStatsOut(
            day=s.date,
            detection_count=s.detection_count,
            accuracy=s.accuracy,
            avg_confidence=s.avg_confidence,
        )
        for s in _get_analytics(request).daily_stats(days, record_filter)
    ]


@router.get("/analytics/daily-errors", response_model=list[DailyErrorStatsOut], summary="Daily error counts")
async def analytics_daily_errors(
    request: Request, days: DaysQuery = 7, record_filter: FilterQuery = RecordFilter.ALL
) -> list[DailyErrorStatsOut]:
    return [
        DailyErrorStatsOut(
            day=s.date,
            detection_count=s.detection_count,
            error_count=s.error_count,
            error_rate=s.error_rate,
        )
        for s in _get_analytics(request).daily_error_stats(days, record_filter)
    ]


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _attachment(extension: str) -> dict[str, str]:
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return {"Content-Disposition": f'attachment; filename="detections_{stamp}.{extension}"'}


@router.get("/export/json", summary="Export records as JSON")
async def export_json(request: Request, record_filter: FilterQuery = RecordFilter.ALL) -> Response:
    return Response(
        content=_get_analytics(request).export_json(record_filter),
        media_type="application/json",
        headers=_attachment("json"),
    )


@router.get("/export/csv", summary="Export records as CSV")
async def export_csv(request: Request, record_filter: FilterQuery = RecordFilter.ALL) -> Response:
    return Response(
        content=_get_analytics(request).export_csv(record_filter),
        media_type="text/csv",
        headers=_attachment("csv"),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        engine_state=_get_classifier(request).engine.state,
        ledger_records=len(_get_ledger(request)),
        max_concurrent=pool.capacity,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get("/model", response_model=ModelInfoResponse, summary="Loaded model details")
async def model_info(request: Request) -> ModelInfoResponse:
    """Describe the classifier without triggering a load."""
    engine = _get_classifier(request).engine
    if not engine.is_ready:
        return ModelInfoResponse(state=engine.state, labels=[])
    height, width = engine.input_size
    return ModelInfoResponse(
        state=engine.state,
        labels=engine.display_labels,
        input_height=height,
        input_width=width,
        num_classes=engine.num_classes,
    )
