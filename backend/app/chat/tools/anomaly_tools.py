"""Chat tools that surface anomalies in traffic, retention, segments and paths."""
from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import Field

from app.chat import detectors
from app.chat.tools.base import ChatTool, DayString, ToolInput
from app.queries import anomaly
from app.queries.common import previous_window

Sensitivity = Literal["low", "medium", "high"]
SegmentKey = Literal["country", "device", "browser", "referrer_domain", "utm_source", "path"]


class DetectInput(ToolInput):
    date_from: DayString
    date_to: DayString
    timezone: str = "UTC"


class TimeseriesAnomaliesInput(DetectInput):
    metric: Literal["visits", "pageviews", "bounce_rate", "visit_duration"]
    interval: Literal["hour", "day", "week"] = "day"
    sensitivity: Sensitivity = "medium"


def _timeseries_anomalies(params: TimeseriesAnomaliesInput, website_id: str) -> dict[str, Any]:
    series = anomaly.get_timeseries(website_id, params.metric, params.date_from, params.date_to, params.interval)
    if not series:
        return {
            "anomalies": [],
            "series": [],
            "message": "No data available for the specified parameters",
        }
    return {
        "anomalies": detectors.detect_timeseries_anomalies(series, params.sensitivity, params.metric),
        "series": series,
    }


class RetentionDipsInput(DetectInput):
    period: Literal["day", "week", "month"] = "week"
    max_k: int = Field(default=12, ge=1, le=52)
    min_cohort_size: int = Field(default=50, ge=1)
    min_effect_size: float = Field(default=0.15, ge=0, le=1)
    sensitivity: Sensitivity = "medium"


def _retention_dips(params: RetentionDipsInput, website_id: str) -> dict[str, Any]:
    rows = anomaly.get_retention_cohorts(
        website_id, params.period, params.date_from, params.date_to, params.max_k
    )
    return detectors.detect_retention_dips(
        rows,
        max_k=params.max_k,
        min_cohort_size=params.min_cohort_size,
        min_effect_size=params.min_effect_size,
        sensitivity=params.sensitivity,
    )


class SegmentShiftsInput(DetectInput):
    segment_by: Union[SegmentKey, list[SegmentKey]]
    metric: Literal["visits", "pageviews", "bounce_rate"] = "visits"
    min_effect_size: float = Field(default=0.01, ge=0, le=1)
    min_share: float = Field(default=0.05, ge=0, le=1)
    min_support: int = Field(default=100, ge=1)
    use_chi_square: bool = False
    normalize_labels: bool = True


def _segment_shifts(params: SegmentShiftsInput, website_id: str) -> dict[str, Any]:
    keys = params.segment_by if isinstance(params.segment_by, list) else [params.segment_by]
    prev_from, prev_to = previous_window(params.date_from, params.date_to)

    findings = []
    extras: dict[str, list] = {"current": [], "previous": []}
    for index, segment_by in enumerate(keys):
        current = anomaly.get_segment_totals(
            website_id, params.metric, segment_by, params.date_from, params.date_to, params.normalize_labels
        )
        previous = anomaly.get_segment_totals(
            website_id, params.metric, segment_by, prev_from, prev_to, params.normalize_labels
        )
        if index == 0:
            extras = {
                "current": [{"label": r["label"] or "unknown", "value": r["value"]} for r in current[:10]],
                "previous": [{"label": r["label"] or "unknown", "value": r["value"]} for r in previous[:10]],
            }
        findings.extend(detectors.detect_segment_shifts(
            current,
            previous,
            segment_by,
            metric=params.metric,
            min_effect_size=params.min_effect_size,
            min_share=params.min_share,
            min_support=params.min_support,
            use_chi_square=params.use_chi_square,
        ))

    findings = detectors.rank_segment_shifts(findings)
    if findings:
        top = findings[0]
        summary = (
            f"Detected {len(findings)} segment shift(s). "
            f"Top: {top['segment_by']}={top['label']} {top['effect_size'] * 100:.0f}pp change."
        )
    else:
        summary = "No significant segment shifts detected for the selected period."
    return {"findings": findings, "summary": summary, "extras": extras}


class PathDropoffsInput(DetectInput):
    min_support: int = Field(default=100, ge=1)
    min_effect_size: float = Field(default=0.15, ge=0, le=1)
    sensitivity: Sensitivity = "medium"
    include_step_dropoffs: bool = True
    normalize_paths: bool = True


def _path_dropoffs(params: PathDropoffsInput, website_id: str) -> dict[str, Any]:
    rows = anomaly.get_path_dropoff_transitions(
        website_id, params.date_from, params.date_to, params.normalize_paths
    )
    return detectors.detect_path_dropoffs(
        rows,
        min_support=params.min_support,
        min_effect_size=params.min_effect_size,
        sensitivity=params.sensitivity,
        include_step_dropoffs=params.include_step_dropoffs,
    )


ANOMALY_TOOLS = [
    ChatTool(
        name="get-detect-timeseries-anomalies",
        description=(
            "Detect spikes and dips in visits, pageviews, bounce rate or visit duration "
            "against a rolling median baseline."
        ),
        input_model=TimeseriesAnomaliesInput,
        handler=_timeseries_anomalies,
    ),
    ChatTool(
        name="detect-retention-dips",
        description=(
            "Detect cohorts whose retention at offset k falls well below the cross-cohort "
            "baseline for the same k."
        ),
        input_model=RetentionDipsInput,
        handler=_retention_dips,
    ),
    ChatTool(
        name="detect-segment-shifts",
        description=(
            "Detect share shifts by country, device, browser, referrer, UTM source or path "
            "between the selected window and the one before it."
        ),
        input_model=SegmentShiftsInput,
        handler=_segment_shifts,
    ),
    ChatTool(
        name="get-detect-path-dropoffs",
        description="Find pages with unusual exit rates and next-step transitions that fall off.",
        input_model=PathDropoffsInput,
        handler=_path_dropoffs,
    ),
]
