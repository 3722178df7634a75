"""Pydantic schemas exchanged with the generation collaborator.

All schemas use Pydantic v2 syntax with model_config instead of class Config.

Schema Overview:
    - PostSnapshot: Read-only view of a post handed to the generator
    - GenerationParams: Requested style/duration/scene count (stored as job JSON)
    - GeneratedScript: Script artifact returned by the generator and scored
      by the quality gate (SceneData, ThumbnailConcept nested)

Script schemas are deliberately lenient: every field has a default, so a
generator response with missing fields still parses and the quality gate
reports the gaps as issues instead of the job failing on a parse error.
The upstream service speaks camelCase; fields accept both spellings.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ScriptStyle = Literal["motivational", "educational", "entertainment", "storytelling"]


class PostSnapshot(BaseModel):
    """Immutable view of a post at the time a job runs.

    Built from a Post row via PostSnapshot.model_validate(post).
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    title: str
    content: str = ""
    author: str | None = None
    subreddit: str | None = None
    score: int = 0
    upvotes: int = 0
    comments: int = 0
    url: str | None = None
    created_at: datetime | None = None


class GenerationParams(BaseModel):
    """Parameters a script is generated with.

    Stored on GenerationJob.generation_params via model_dump(). Regeneration
    hints are applied with model_copy(update=hints.parameter_overrides).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    style: ScriptStyle = "motivational"
    target_duration: int = Field(default=60, ge=15, le=600)
    scene_count: int | None = Field(default=None, ge=1, le=12)


class SceneData(BaseModel):
    """One scene of a generated script."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int = 0
    narration: str = ""
    duration: float = 0
    visual_keywords: list[str] = Field(default_factory=list)
    emotion: str | None = None


class ThumbnailConcept(BaseModel):
    """Thumbnail idea proposed alongside a script."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    description: str = ""
    visual_elements: list[str] = Field(default_factory=list)
    text_overlay: str | None = None
    color_scheme: str = ""


class GeneratedScript(BaseModel):
    """Video script artifact produced by the generation collaborator."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    script_content: str = ""
    scene_breakdown: list[SceneData] = Field(default_factory=list)
    duration_estimate: float = 0
    titles: list[str] = Field(default_factory=list)
    description: str = ""
    thumbnail_concepts: list[ThumbnailConcept] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    generation_params: GenerationParams | None = None

    def to_storage(self) -> dict[str, Any]:
        """Serialize for the ScriptVersion.script JSON column."""
        return self.model_dump(mode="json")
