"""Chat tools explaining why conversions dropped."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import Field

from app.chat.tools.base import ChatTool, PeriodComparisonInput, RangeInput
from app.core.time import now_utc
from app.queries import conversion_drop


def _total_conversion_drop(params: PeriodComparisonInput, website_id: str) -> dict[str, Any]:
    result = conversion_drop.get_total_conversion_drop(website_id, params.conversionEvent, *params.windows())
    return {"data": result}


class DropCorrelatedEventsInput(RangeInput):
    targetEvent: str = Field(min_length=1, description="Conversion event to check against")
    compareWithConverters: bool = Field(default=False, description="Contrast with converting sessions")


def _drop_correlated_events(params: DropCorrelatedEventsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = conversion_drop.get_drop_correlated_events(
        website_id, params.targetEvent, start, end, params.compareWithConverters
    )
    events = result["events"]
    top = events[0] if events else None
    return {
        "data": events,
        "summary": {
            "totalEventsAnalyzed": len(events),
            "nonConvertingSessions": result["nonConvertingSessions"],
            "averageDropSessionPercent": (
                sum(e["dropSessionPercent"] for e in events) / len(events) if events else 0
            ),
            "eventWithHighestCorrelation": top["event"] if top else "N/A",
            "highestCorrelationPercent": top["dropSessionPercent"] if top else 0,
            "comparisonEnabled": params.compareWithConverters,
        },
        "metadata": {
            "websiteId": website_id,
            "targetEvent": params.targetEvent,
            "dateRange": {"from": params.from_, "to": params.to},
            "analysisType": "drop_correlated_events",
            "generatedAt": now_utc().isoformat(),
        },
    }


class DropCorrelatedPagesInput(RangeInput):
    targetEvent: str = Field(min_length=1, description="Conversion event to check for")
    lastPagesLimit: int = Field(default=1, ge=1, le=5, description="Last pages per session to consider")


def _drop_correlated_pages(params: DropCorrelatedPagesInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = conversion_drop.get_drop_correlated_pages(
        website_id, params.targetEvent, start, end, params.lastPagesLimit
    )
    pages = result["pages"]
    return {
        "data": pages,
        "summary": {
            "totalPagesAnalyzed": len(pages),
            "nonConvertingSessions": result["nonConvertingSessions"],
            "topExitPage": pages[0]["path"] if pages else "N/A",
        },
        "metadata": {
            "websiteId": website_id,
            "targetEvent": params.targetEvent,
            "dateRange": {"from": params.from_, "to": params.to},
            "lastPagesLimit": params.lastPagesLimit,
            "analysisType": "drop_correlated_pages",
        },
    }


class DropChainInput(RangeInput):
    steps: list[str] = Field(min_length=2, description="Ordered event names treated as funnel steps")
    distinctBy: Literal["session_id", "visitor_id"] = "session_id"


def _drop_chain(params: DropChainInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    chain = conversion_drop.get_event_drop_chain(website_id, params.steps, start, end, params.distinctBy)
    drops = [step for step in chain if step["dropToNext"] is not None]
    worst = max(drops, key=lambda step: step["dropRate"], default=None)
    return {
        "data": chain,
        "summary": {
            "totalSteps": len(chain),
            "startingUsers": chain[0]["users"] if chain else 0,
            "finalUsers": chain[-1]["users"] if chain else 0,
            "biggestDropStep": worst["step"] if worst else None,
            "biggestDropRate": worst["dropRate"] if worst else 0,
        },
    }


class SegmentComparisonInput(PeriodComparisonInput):
    minVisitors: int = Field(default=5, ge=1, description="Minimum unique visitors per segment")


def _segment_tool(segment: str):
    def handler(params: SegmentComparisonInput, website_id: str) -> dict[str, Any]:
        rows = conversion_drop.compare_by_segment(
            website_id, params.conversionEvent, segment, *params.windows(), min_visitors=params.minVisitors
        )
        return {"data": rows}

    return handler


class SegmentShiftInput(SegmentComparisonInput):
    segmentFields: list[str] = Field(min_length=1, description='Fields to segment by, e.g. ["device", "country"]')


def _segment_shift(params: SegmentShiftInput, website_id: str) -> dict[str, Any]:
    rows = conversion_drop.compare_by_segment_shift(
        website_id,
        params.conversionEvent,
        params.segmentFields,
        *params.windows(),
        min_visitors=params.minVisitors,
    )
    return {"data": rows}


CONVERSION_TOOLS = [
    ChatTool(
        name="check-total-conversion-drop",
        description="Compare conversion rate between two periods and report the change.",
        input_model=PeriodComparisonInput,
        handler=_total_conversion_drop,
    ),
    ChatTool(
        name="check-drop-correlated-events",
        description="Events most common among sessions that never reached the target conversion.",
        input_model=DropCorrelatedEventsInput,
        handler=_drop_correlated_events,
    ),
    ChatTool(
        name="check-drop-correlated-pages",
        description="Last pages seen by sessions that never reached the target conversion.",
        input_model=DropCorrelatedPagesInput,
        handler=_drop_correlated_pages,
    ),
    ChatTool(
        name="check-event-drop-chain",
        description="Users per funnel step and the drop between consecutive steps.",
        input_model=DropChainInput,
        handler=_drop_chain,
    ),
    ChatTool(
        name="compare-by-device",
        description="Conversion rate change by device between two periods.",
        input_model=SegmentComparisonInput,
        handler=_segment_tool("device"),
    ),
    ChatTool(
        name="compare-by-country",
        description="Conversion rate change by country between two periods.",
        input_model=SegmentComparisonInput,
        handler=_segment_tool("country"),
    ),
    ChatTool(
        name="compare-by-source",
        description="Conversion rate change by referrer domain between two periods.",
        input_model=SegmentComparisonInput,
        handler=_segment_tool("source"),
    ),
    ChatTool(
        name="compare-by-path",
        description="Conversion rate change by visited path between two periods.",
        input_model=SegmentComparisonInput,
        handler=_segment_tool("path"),
    ),
    ChatTool(
        name="compare-by-segment-shift",
        description="Conversion rate change for combined segments (e.g. device and country).",
        input_model=SegmentShiftInput,
        handler=_segment_shift,
    ),
]
