"""
Pydantic Data Models for the HTTP surface

Provides structured, type-safe definitions for:
- Search requests and responses
- Interaction (feedback) requests
- Cache statistics
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from incident_suggest.domain import ANONYMOUS_USER, InteractionAction, SourceSystem


# ============================================================================
# Request Models
# ============================================================================


class SearchRequest(BaseModel):
    """Request for solution suggestions for one incident."""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "short_description": "Login fails with 401 after patch",
            "description": "Users get 401 Unauthorized on SSO login after the 2.3 patch deployment.",
            "incident_id": "INC0012345",
            "user_id": "u-42",
            "connected_systems": ["JIRA", "Confluence"],
            "max_results": 10,
        }
    })

    short_description: str = Field(..., min_length=1, max_length=500, description="Incident summary")
    description: str = Field(default="", max_length=20000, description="Incident details")
    incident_id: Optional[str] = Field(default=None, max_length=128, description="Incident number")
    user_id: str = Field(default=ANONYMOUS_USER, min_length=1, description="Opaque user id")
    team: Optional[str] = Field(default=None, description="Requesting user's team")
    connected_systems: Optional[List[SourceSystem]] = Field(
        default=None, description="Systems to search; omitted means every registered system"
    )
    max_results: Optional[int] = Field(default=None, ge=1, le=50, description="Suggestions to return")
    incident_type: Optional[str] = Field(default=None, description="authentication, performance, ...")
    urgency_level: Optional[str] = Field(default=None, description="critical, high, medium, low")

    @field_validator("connected_systems", mode="before")
    @classmethod
    def _parse_systems(cls, value: Any) -> Any:
        if value is None:
            return None
        return [SourceSystem.parse(v) for v in value]

    @model_validator(mode="after")
    def _require_text(self) -> "SearchRequest":
        if not f"{self.short_description} {self.description}".strip():
            raise ValueError("Incident description must not be empty")
        return self

    @property
    def text(self) -> str:
        return f"{self.short_description} {self.description}".strip()


class InteractionRequest(BaseModel):
    """A user's reaction to one suggestion."""

    user_id: str = Field(..., min_length=1)
    incident_id: str = Field(..., min_length=1)
    suggestion_id: str = Field(..., min_length=1, description="Suggestion external id")
    system: SourceSystem
    action: InteractionAction
    title: str = Field(default="")
    snippet: str = Field(default="")
    created_at: Optional[datetime] = Field(default=None, description="Suggestion creation date")
    keywords: List[str] = Field(default_factory=list, description="Search keywords of the incident")
    position: Optional[int] = Field(default=None, ge=1, description="1-based rank the user saw")
    time_spent_seconds: Optional[float] = Field(default=None, ge=0.0)
    rating: Optional[float] = Field(default=None, ge=1.0, le=5.0, description="Explicit 1-5 rating")

    @field_validator("system", mode="before")
    @classmethod
    def _parse_system(cls, value: Any) -> Any:
        return SourceSystem.parse(value)


# ============================================================================
# Response Models
# ============================================================================


class SuggestionOut(BaseModel):
    """One ranked suggestion."""

    system: SourceSystem
    title: str
    id: str
    snippet: str
    link: str
    score: float = Field(ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    suggestions: List[SuggestionOut] = Field(default_factory=list)
    total_found: int = Field(ge=0)
    search_keywords: List[str] = Field(default_factory=list)
    search_time_ms: float = Field(ge=0.0)
    cached: bool = False
    message: Optional[str] = None


class InteractionResponse(BaseModel):
    recorded: bool
    learned: bool = Field(description="False for anonymous users, whose profile never changes")
    confidence_score: Optional[float] = None


class CacheStatsResponse(BaseModel):
    total_entries: int
    valid_entries: int
    expired_entries: int
    avg_search_time_ms: float
    hits: int
    misses: int
    hit_rate: float
    max_entries: Optional[int] = None


class CleanupResponse(BaseModel):
    removed: int
