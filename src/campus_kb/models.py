from __future__ import annotations

from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, model_validator

Namespace: TypeAlias = Literal["chunks", "schedule"]


class KnowledgeChunk(BaseModel):
    """A retrievable unit of knowledge-base content"""

    id: str = Field(min_length=1, description="Stable natural key assigned at authoring time")
    content: str = Field(default="", description="Primary prose")
    text: str | None = Field(default=None, description="Searchable text, defaults to content")
    section: str | None = None
    type: str | None = None
    category: str | None = None
    keywords: list[str] = Field(default_factory=list)
    embedding: list[float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _default_text(self) -> KnowledgeChunk:
        if not self.text:
            self.text = self.content
        return self

    def embedding_text(self) -> str:
        parts = [self.text or self.content]
        if self.keywords:
            parts.append(" ".join(self.keywords))
        return "\n".join(part for part in parts if part)


class ScheduleEvent(BaseModel):
    """A calendar entry sharing the chunk search contract"""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    category: str | None = None
    type: str | None = None
    date: str | None = None
    iso_date: str | None = Field(default=None, alias="isoDate")
    start_date: str | None = Field(default=None, alias="startDate")
    end_date: str | None = Field(default=None, alias="endDate")
    date_type: str | None = Field(default=None, alias="dateType")
    semester: str | None = None
    time: str | None = None
    user_type: str | None = Field(default=None, alias="userType")
    source: str | None = None
    embedding: list[float] | None = None

    def embedding_text(self) -> str:
        parts = [self.title, self.description]
        if self.semester:
            parts.append(f"Semester: {self.semester}")
        if self.iso_date or self.date:
            parts.append(f"Date: {self.iso_date or self.date}")
        if self.start_date and self.end_date:
            parts.append(f"From {self.start_date} to {self.end_date}")
        return "\n".join(part for part in parts if part)
