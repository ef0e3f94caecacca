"""
Analytics tool API.

Every tool is served as a GET/POST pair under /api/tools/<name>. GET reads the
query string, POST reads a JSON body; both accept the same camelCase keys.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app.chat.registry import build_tools_map
from app.chat.tools.base import UUID_PATTERN
from app.core.time import days_before, now_utc
from app.queries import events
from app.queries.common import default_range, iso, percentage, round2, safe_ratio

logger = logging.getLogger(__name__)

router = APIRouter()

TOOLS = build_tools_map()

# Keys that may arrive as comma-separated strings on the query string.
LIST_KEYS = ("steps", "segmentFields")


def _timestamp() -> str:
    return now_utc().isoformat()


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "timestamp": _timestamp()},
    )


async def _read_params(request: Request) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for key in request.query_params.keys():
        values = request.query_params.getlist(key)
        params[key] = values if len(values) > 1 else values[0]
    if request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if body is not None and not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")
        params.update(body or {})
    for key in LIST_KEYS:
        value = params.get(key)
        if isinstance(value, str):
            params[key] = [part.strip() for part in value.split(",") if part.strip()]
    return params


def _first(params: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = params.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _int(params: dict[str, Any], key: str, default: int) -> int:
    value = params.get(key)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be an integer") from e


async def _handle(request: Request, tool: str, build: Callable[[str, dict[str, Any]], dict[str, Any]]):
    try:
        params = await _read_params(request)
    except ValueError as e:
        return _error(400, "Invalid request", str(e))

    website_id = _first(params, "websiteId")
    if not website_id:
        return _error(400, "websiteId is required", "Pass websiteId in the query string or JSON body")
    if not UUID_PATTERN.match(website_id.strip()):
        return _error(400, "Invalid websiteId", f"websiteId must be a UUID, got {website_id!r}")
    website_id = website_id.strip()

    try:
        data = await run_in_threadpool(build, website_id, params)
    except ValueError as e:
        logger.info("Rejected %s request: %s", tool, e)
        return _error(400, "Invalid request", str(e))
    except Exception as e:
        logger.exception("Tool %s failed for website %s", tool, website_id)
        return _error(500, "Internal server error", str(e))

    return {"success": True, "data": data, "timestamp": _timestamp()}


def _window(params: dict[str, Any]):
    return default_range(_first(params, "startDate", "start_date"), _first(params, "endDate", "end_date"))


def _period(start, end) -> dict[str, str]:
    return {"startDate": iso(start), "endDate": iso(end)}


# ---------------------------------------------------------------------------
# Event tools (one query function each)
# ---------------------------------------------------------------------------


def _average_events_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    event_name = _first(params, "eventName", "event_name")
    result = events.get_average_events_per_session(website_id, start, end, event_name)
    average = result["averageEventsPerSession"]
    return {
        "websiteId": website_id,
        **_period(start, end),
        "filter": event_name or "all_events",
        "averageEventsPerSession": round2(average),
        "totalSessions": result["totalSessions"],
        "totalEvents": result["totalEvents"],
        "breakdown": result["breakdown"],
        "analysis": {
            "question": "What is the average number of events per session?",
            "answer": (
                f"The average number of events per session is {average:.2f}. "
                f"This is calculated from {result['totalEvents']} total events across "
                f"{result['totalSessions']} unique sessions."
            ),
        },
    }


def _events_covering(result: dict[str, Any], share: float = 80.0) -> int:
    covered = 0
    running = 0
    for event in result["events"]:
        running += event["eventCount"]
        if running / result["totalEvents"] * 100 <= share:
            covered += 1
    return covered


def _most_frequent_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    result = events.get_most_frequent_events(website_id, start, end, _int(params, "limit", 10))
    top = result["events"][0] if result["events"] else None
    return {
        "websiteId": website_id,
        "period": result["period"],
        "totalEvents": result["totalEvents"],
        "events": [
            {**event, "percentage": round2(event["percentage"])}
            for event in result["events"]
        ],
        "analysis": {
            "question": "Which events are used most frequently?",
            "answer": (
                f"The most frequent event is {top['eventName']} with {top['eventCount']} occurrences "
                f"({top['percentage']:.2f}% of all custom events)."
                if top
                else "No custom events were recorded in this period."
            ),
            "interpretation": (
                f"{_events_covering(result)} event(s) account for up to 80% of all custom events."
                if top
                else None
            ),
        },
    }


def _signup_conversion_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    signup_event = _first(params, "signupEventName", "signup_event_name") or "signup"
    result = events.get_signup_conversion_rate(website_id, start, end, signup_event)
    visits = result["totalVisits"]
    signups = result["totalSignups"]
    return {
        "websiteId": website_id,
        **result["period"],
        "signupEventName": signup_event,
        "totalVisits": visits,
        "totalSignups": signups,
        "conversionRate": f"{result['conversionRate']:.2f}%",
        "breakdown": result["breakdown"],
        "analysis": {
            "question": "What is the signup conversion rate?",
            "answer": (
                f"Out of {visits} visits, {signups} resulted in signups, "
                f"giving a conversion rate of {result['conversionRate']:.2f}%."
            ),
            "interpretation": f"{signups}:{visits} signups to visits",
        },
    }


def _funnel_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    event_x = _first(params, "eventX", "event_x")
    event_y = _first(params, "eventY", "event_y")
    result = events.get_event_conversion_funnel(website_id, start, end, event_x, event_y)
    rate = round2(result["conversionRate"])
    label_x = event_x or "page_view"
    label_y = event_y or "any_custom_event"
    return {
        "websiteId": website_id,
        **_period(start, end),
        "eventX": label_x,
        "eventY": label_y,
        "startedSessions": result["startedSessions"],
        "convertedSessions": result["convertedSessions"],
        "conversionRate": rate,
        "analysis": {
            "question": f"What share of sessions with {label_x} go on to {label_y}?",
            "answer": (
                f"{result['convertedSessions']} of {result['startedSessions']} sessions that fired "
                f"{label_x} later fired {label_y} ({rate:.2f}%)."
            ),
        },
    }


def _dropoffs_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    event_name = _first(params, "eventName", "event_name")
    result = events.get_event_dropoffs(website_id, start, end, event_name, _int(params, "limit", 10))
    items = [{**item, "dropoffRate": round2(item["dropoffRate"])} for item in result["items"]]
    worst = max(items, key=lambda item: item["dropoffRate"], default=None)
    return {
        "websiteId": website_id,
        **_period(start, end),
        "filter": event_name or "all_events",
        "items": items,
        "analysis": {
            "question": "After which events do sessions most often end?",
            "answer": (
                f"Sessions most often end after {worst['eventName']}: "
                f"{worst['dropoffRate']:.2f}% of sessions with it fired nothing afterwards."
                if worst
                else "No custom events were recorded in this period."
            ),
        },
    }


def _frequency_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    event_name = _first(params, "eventName", "event_name")
    event_type = _first(params, "eventType", "event_type")
    result = events.get_event_frequency_distribution(
        website_id, start, end, event_name, int(event_type) if event_type else None
    )
    total = result["totalUniqueUsers"]
    one = result["usersWithOneEvent"]
    multi = result["usersWithMultipleEvents"]
    one_pct = percentage(one, total)
    multi_pct = percentage(multi, total)
    return {
        "websiteId": website_id,
        **_period(start, end),
        "filter": event_name or "all_events",
        "usersWithOneEvent": one,
        "usersWithMultipleEvents": multi,
        "totalUsers": total,
        "breakdown": result["breakdown"],
        "analysis": {
            "question": "How many users performed the event once versus multiple times?",
            "answer": (
                f"{one} users ({one_pct:.2f}%) performed the event once, while "
                f"{multi} users ({multi_pct:.2f}%) performed it multiple times."
            ),
        },
    }


def _comparison_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    add_event = _first(params, "addEventName", "add_event_name") or "add_to_cart"
    checkout_event = _first(params, "checkoutEventName", "checkout_event_name") or "checkout_success"
    result = events.get_event_comparison(website_id, start, end, add_event, checkout_event)
    return {
        "websiteId": website_id,
        **result["period"],
        "addEventName": add_event,
        "checkoutEventName": checkout_event,
        "addToCartCount": result["addToCartCount"],
        "checkoutCount": result["checkoutCount"],
        "successRate": f"{result['successRate']:.2f}%",
        "totalEvents": result["totalEvents"],
        "analysis": {
            "question": f"How many {add_event} events turn into {checkout_event}?",
            "answer": (
                f"During the analyzed period, there were {result['addToCartCount']} {add_event} events "
                f"and {result['checkoutCount']} {checkout_event} events. "
                f"The conversion rate is {result['successRate']:.2f}%."
            ),
        },
    }


def _engagement_level(unique_users: int, total_clicks: int) -> str:
    if unique_users == 0:
        return "No engagement"
    per_user = total_clicks / unique_users
    if per_user >= 2.0:
        return "High engagement (multiple clicks per user)"
    if per_user >= 1.5:
        return "Medium-high engagement"
    if per_user >= 1.1:
        return "Medium engagement"
    return "Low engagement (mostly single clicks)"


def _button_clicks_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    event_name = _first(params, "eventName", "event_name")
    if not event_name:
        raise ValueError("eventName is required")
    result = events.get_unique_button_click_users(website_id, start, end, event_name)
    users = result["uniqueUsers"]
    clicks = result["totalClicks"]
    per_user = safe_ratio(clicks, users)
    return {
        "websiteId": website_id,
        **result["period"],
        "eventName": event_name,
        "uniqueUsers": users,
        "totalClicks": clicks,
        "clicksPerUser": f"{per_user:.2f}",
        "analysis": {
            "question": f"How many users clicked {event_name}?",
            "answer": f"{users} unique users clicked {event_name} {clicks} times in total.",
            "interpretation": _engagement_level(users, clicks),
        },
    }


def _first_day_data(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
    start, end = _window(params)
    event_name = _first(params, "eventName", "event_name")
    result = events.get_new_user_first_day_event_rate(website_id, start, end, event_name)
    pct = round2(result["percentage"])
    return {
        "websiteId": website_id,
        **_period(start, end),
        "filter": event_name or "any_custom_event",
        "totalSessions": result["totalSessions"],
        "sessionsWithEventOnFirstDay": result["sessionsWithEventOnFirstDay"],
        "percentage": pct,
        "analysis": {
            "question": "What share of new users fire the event on their first day?",
            "answer": (
                f"{result['sessionsWithEventOnFirstDay']} of {result['totalSessions']} new sessions "
                f"({pct:.2f}%) fired {event_name or 'a custom event'} on their first day."
            ),
        },
    }


EVENT_ROUTES: dict[str, Callable[[str, dict[str, Any]], dict[str, Any]]] = {
    "get-average-events-per-session": _average_events_data,
    "get-most-frequent-events": _most_frequent_data,
    "get-signup-conversion-rate": _signup_conversion_data,
    "get-event-conversion-funnel": _funnel_data,
    "get-event-dropoffs": _dropoffs_data,
    "get-event-frequency-distribution": _frequency_data,
    "get-event-comparison": _comparison_data,
    "get-unique-button-click-users": _button_clicks_data,
    "get-new-user-first-day-event-rate": _first_day_data,
}


# ---------------------------------------------------------------------------
# Conversion-drop tools (validated through the chat tool input models)
# ---------------------------------------------------------------------------


def _default_days(params: dict[str, Any], from_key: str, to_key: str, days: int = 7, offset: int = 0) -> None:
    last_day = days_before(offset)
    params.setdefault(to_key, last_day.isoformat())
    params.setdefault(from_key, days_before(days - 1, last_day).isoformat())


def _range_defaults(params: dict[str, Any]) -> dict[str, Any]:
    params = dict(params)
    if "startDate" in params:
        params.setdefault("from", str(params["startDate"])[:10])
    if "endDate" in params:
        params.setdefault("to", str(params["endDate"])[:10])
    _default_days(params, "from", "to")
    return params


def _comparison_defaults(params: dict[str, Any]) -> dict[str, Any]:
    params = dict(params)
    _default_days(params, "currentFrom", "currentTo")
    _default_days(params, "previousFrom", "previousTo", offset=7)
    return params


def _tool_route(name: str, defaults: Callable[[dict[str, Any]], dict[str, Any]]):
    tool = TOOLS[name]

    def build(website_id: str, params: dict[str, Any]) -> dict[str, Any]:
        result = tool.execute({**defaults(params), "websiteId": website_id})
        return {"websiteId": website_id, **result}

    return build


TOOL_ROUTES: dict[str, Callable[[str, dict[str, Any]], dict[str, Any]]] = {
    "check-drop-correlated-events": _tool_route("check-drop-correlated-events", _range_defaults),
    "check-drop-correlated-pages": _tool_route("check-drop-correlated-pages", _range_defaults),
    "check-event-drop-chain": _tool_route("check-event-drop-chain", _range_defaults),
    "compare-by-device": _tool_route("compare-by-device", _comparison_defaults),
    "compare-by-path": _tool_route("compare-by-path", _comparison_defaults),
    "compare-by-segment-shift": _tool_route("compare-by-segment-shift", _comparison_defaults),
}


def _register(name: str, build: Callable[[str, dict[str, Any]], dict[str, Any]]) -> None:
    async def endpoint(request: Request):
        return await _handle(request, name, build)

    endpoint.__name__ = name.replace("-", "_")
    router.add_api_route(f"/{name}", endpoint, methods=["GET", "POST"], name=name)


for _name, _build in {**EVENT_ROUTES, **TOOL_ROUTES}.items():
    _register(_name, _build)
