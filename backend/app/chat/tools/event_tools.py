"""Chat tools over custom and pageview events."""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import Field

from app.chat.tools.base import ChatTool, RecentWindowInput
from app.queries import events
from app.queries.common import iso

Granularity = Literal["day", "week", "month"]
EventSegment = Literal["country", "device", "browser"]


def _window_fields(params: RecentWindowInput, start, end) -> dict[str, Any]:
    return {
        "days": params.days,
        "start_date": iso(start)[:10],
        "end_date": iso(end)[:10],
    }


class AverageEventsInput(RecentWindowInput):
    event_name: Optional[str] = Field(default=None, description="Only count this event")


def _average_events(params: AverageEventsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_average_events_per_session(website_id, start, end, params.event_name)
    return {
        **_window_fields(params, start, end),
        "filter": params.event_name or "all_events",
        "summary": {
            "average_events_per_session": round(result["averageEventsPerSession"], 2),
            "total_sessions": result["totalSessions"],
            "total_events": result["totalEvents"],
        },
        "breakdown": [
            {
                "events_per_session": item["eventCount"],
                "session_count": item["sessionCount"],
                "percentage": round(item["percentage"], 2),
            }
            for item in result["breakdown"]
        ],
    }


class MostFrequentEventsInput(RecentWindowInput):
    limit: int = Field(default=10, ge=1, le=100)


def _most_frequent(params: MostFrequentEventsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_most_frequent_events(website_id, start, end, params.limit)
    return {**_window_fields(params, start, end), **result}


class SignupConversionInput(RecentWindowInput):
    signup_event_name: str = Field(default="signup", min_length=1)


def _signup_conversion(params: SignupConversionInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_signup_conversion_rate(website_id, start, end, params.signup_event_name)
    return {**_window_fields(params, start, end), **result}


class FunnelInput(RecentWindowInput):
    event_x: Optional[str] = Field(default=None, description="First event (default: any pageview)")
    event_y: Optional[str] = Field(default=None, description="Later event (default: any custom event)")


def _funnel(params: FunnelInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_event_conversion_funnel(website_id, start, end, params.event_x, params.event_y)
    return {**_window_fields(params, start, end), **result}


class DropoffsInput(RecentWindowInput):
    event_name: Optional[str] = None
    limit: int = Field(default=10, ge=1, le=100)


def _dropoffs(params: DropoffsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_event_dropoffs(website_id, start, end, params.event_name, params.limit)
    return {**_window_fields(params, start, end), "items": result["items"]}


class FrequencyInput(RecentWindowInput):
    event_name: Optional[str] = None
    event_type: Optional[int] = Field(default=None, ge=1, le=2, description="1 = pageview, 2 = custom event")


def _frequency(params: FrequencyInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_event_frequency_distribution(
        website_id, start, end, params.event_name, params.event_type
    )
    return {**_window_fields(params, start, end), **result}


class ComparisonInput(RecentWindowInput):
    add_event_name: str = Field(default="add_to_cart", min_length=1)
    checkout_event_name: str = Field(default="checkout_success", min_length=1)


def _comparison(params: ComparisonInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_event_comparison(
        website_id, start, end, params.add_event_name, params.checkout_event_name
    )
    return {**_window_fields(params, start, end), **result}


class ButtonClickInput(RecentWindowInput):
    event_name: str = Field(min_length=1, description="Custom event fired by the button")


def _button_clicks(params: ButtonClickInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_unique_button_click_users(website_id, start, end, params.event_name)
    return {**_window_fields(params, start, end), **result}


class FirstDayInput(RecentWindowInput):
    event_name: Optional[str] = Field(default=None, description="Event to look for (default: any custom event)")


def _first_day(params: FirstDayInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = events.get_new_user_first_day_event_rate(website_id, start, end, params.event_name)
    return {**_window_fields(params, start, end), **result}


class EventCountInput(RecentWindowInput):
    event_name: Optional[str] = Field(default=None, description="Only count this event (default: all custom events)")


def _total_event_count(params: EventCountInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    total = events.get_total_event_count(website_id, start, end, params.event_name)
    return {**_window_fields(params, start, end), "event_name": params.event_name, "total_events": total}


def _unique_users(params: EventCountInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    users = events.get_unique_users(website_id, start, end, params.event_name)
    return {**_window_fields(params, start, end), "event_name": params.event_name, "unique_users": users}


class PeriodEventsInput(EventCountInput):
    granularity: Granularity = "day"


def _events_per_period(params: PeriodEventsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    periods = events.get_events_per_period(website_id, start, end, params.granularity, params.event_name)
    return {**_window_fields(params, start, end), "granularity": params.granularity, "periods": periods}


def _returning_users(params: PeriodEventsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    periods = events.get_returning_event_users(website_id, start, end, params.granularity, params.event_name)
    return {**_window_fields(params, start, end), "granularity": params.granularity, "periods": periods}


class SegmentedEventsInput(EventCountInput):
    segment_by: EventSegment = "device"


def _segmented_events(params: SegmentedEventsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    segments = events.get_segmented_events(website_id, start, end, params.segment_by, params.event_name)
    return {**_window_fields(params, start, end), "segments": segments}


class EventTrendsInput(PeriodEventsInput):
    segment_by: EventSegment = "device"


def _event_trends(params: EventTrendsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    per_period = events.get_events_per_period(website_id, start, end, params.granularity, params.event_name)
    returning = events.get_returning_event_users(website_id, start, end, params.granularity, params.event_name)
    segments = events.get_segmented_events(website_id, start, end, params.segment_by, params.event_name)
    return {
        **_window_fields(params, start, end),
        "granularity": params.granularity,
        "event_name": params.event_name,
        "events_per_period": per_period,
        "returning_users": returning,
        "segments": segments,
        "summary": {
            "total_events": sum(p["events_count"] for p in per_period),
            "periods": len(per_period),
            "top_segment": segments[0]["segment_value"] if segments else None,
        },
    }


EVENT_TOOLS = [
    ChatTool(
        name="get-average-events-per-session",
        description="Average number of events per session, with the distribution of events per session.",
        input_model=AverageEventsInput,
        handler=_average_events,
    ),
    ChatTool(
        name="get-most-frequent-events",
        description="Most frequent custom events and their share of all custom events.",
        input_model=MostFrequentEventsInput,
        handler=_most_frequent,
    ),
    ChatTool(
        name="get-signup-conversion-rate",
        description="Signups per 100 pageviews, with unique visitors and signup sessions.",
        input_model=SignupConversionInput,
        handler=_signup_conversion,
    ),
    ChatTool(
        name="get-event-conversion-funnel",
        description="Share of sessions with event X that later fire event Y in the same session.",
        input_model=FunnelInput,
        handler=_funnel,
    ),
    ChatTool(
        name="get-event-dropoffs",
        description="Custom events that most often are the last event of a session.",
        input_model=DropoffsInput,
        handler=_dropoffs,
    ),
    ChatTool(
        name="get-event-frequency-distribution",
        description="How many sessions fired an event once versus several times.",
        input_model=FrequencyInput,
        handler=_frequency,
    ),
    ChatTool(
        name="get-event-comparison",
        description="Add-to-cart versus checkout counts and the checkout success rate.",
        input_model=ComparisonInput,
        handler=_comparison,
    ),
    ChatTool(
        name="get-unique-button-click-users",
        description="Unique sessions and total clicks for a button's custom event.",
        input_model=ButtonClickInput,
        handler=_button_clicks,
    ),
    ChatTool(
        name="get-new-user-first-day-event-rate",
        description="Share of new sessions that fire an event on their first day.",
        input_model=FirstDayInput,
        handler=_first_day,
    ),
    ChatTool(
        name="get-total-event-count",
        description="Number of custom events, optionally of one event name.",
        input_model=EventCountInput,
        handler=_total_event_count,
    ),
    ChatTool(
        name="get-unique-users",
        description="Number of sessions that fired a custom event, optionally of one event name.",
        input_model=EventCountInput,
        handler=_unique_users,
    ),
    ChatTool(
        name="get-events-per-period",
        description="Custom events and distinct sessions per day, week or month.",
        input_model=PeriodEventsInput,
        handler=_events_per_period,
    ),
    ChatTool(
        name="get-returning-event-users",
        description="Identified users firing custom events per period and how many had fired one in an earlier period.",
        input_model=PeriodEventsInput,
        handler=_returning_users,
    ),
    ChatTool(
        name="get-segmented-events",
        description="Custom events and distinct sessions split by country, device or browser.",
        input_model=SegmentedEventsInput,
        handler=_segmented_events,
    ),
    ChatTool(
        name="get-event-trends",
        description="Events per period, returning users and a segment breakdown for custom events in one call.",
        input_model=EventTrendsInput,
        handler=_event_trends,
    ),
]
