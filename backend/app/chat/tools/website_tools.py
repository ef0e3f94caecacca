"""Website listing, active website selection and headline statistics tools."""
from __future__ import annotations

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.chat.tools.base import UUID_PATTERN, ChatTool, RecentWindowInput, set_active_website_id
from app.queries import reports


class NoInput(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _websites(params: NoInput) -> dict[str, Any]:
    websites = reports.get_websites()
    return {
        "websites": websites,
        "count": len(websites),
        "message": (
            f"Found {len(websites)} website(s). Pass one of these IDs as websiteId."
            if websites
            else "No websites found in the database."
        ),
    }


class SetActiveWebsiteInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    websiteId: str = Field(min_length=1, description="Website UUID to use for subsequent tools")

    @field_validator("websiteId")
    @classmethod
    def _uuid(cls, value: str) -> str:
        value = value.strip()
        if not UUID_PATTERN.match(value):
            raise ValueError("websiteId must be a UUID")
        return value


def _set_active_website(params: SetActiveWebsiteInput) -> dict[str, Any]:
    set_active_website_id(params.websiteId)
    return {"ok": True, "websiteId": params.websiteId}


class WebStatisticsInput(RecentWindowInput):
    filters: dict[str, Union[str, list[str]]] = Field(
        default_factory=dict,
        description='Dimension filters, e.g. {"country": "US", "device": ["mobile", "tablet"]}',
    )


def _web_statistics(params: WebStatisticsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    stats = reports.get_web_statistics(
        website_id,
        {"start_date": start, "end_date": end, "dimensions": params.filters},
    )
    visits = stats["visits"]
    return {
        "start_date": start.date().isoformat(),
        "end_date": end.date().isoformat(),
        **stats,
        "bounce_rate": round(stats["bounces"] / visits, 4) if visits > 0 else 0,
    }


WEBSITE_TOOLS = [
    ChatTool(
        name="get-websites",
        description="List websites with their IDs, names and domains.",
        input_model=NoInput,
        handler=_websites,
        needs_website=False,
    ),
    ChatTool(
        name="set-active-website",
        description="Set the website that later tools use when no websiteId is passed.",
        input_model=SetActiveWebsiteInput,
        handler=_set_active_website,
        needs_website=False,
    ),
    ChatTool(
        name="get-web-statistics",
        description="Pageviews, visitors, visits, bounces and total time for a website, with optional filters.",
        input_model=WebStatisticsInput,
        handler=_web_statistics,
    ),
]
