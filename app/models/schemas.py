from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


# --- Requests ---


class IdeaInput(BaseModel):
    """The idea under research. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(min_length=1, max_length=200)
    one_liner: str = Field(default="", max_length=500)
    category: str | None = None
    location: str | None = None


class ApproxLocation(BaseModel):
    """Coarse geographic context attached to searches and cache keys."""

    model_config = ConfigDict(frozen=True)

    country: str | None = None
    region: str | None = None

    def describe(self) -> str:
        parts = [p.strip() for p in (self.region, self.country) if p and p.strip()]
        return ", ".join(parts)
