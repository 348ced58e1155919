from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
)


Role = Literal["user", "assistant", "system"]


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: Optional[str] = None


class OpaquePart(BaseModel):
    """Any non-text part (files, reasoning, tool calls...). Kept but never read."""

    model_config = ConfigDict(extra="allow")

    type: str


def _part_kind(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("type")
    else:
        kind = getattr(value, "type", None)
    return "text" if kind == "text" else "other"


Part = Annotated[
    Union[Annotated[TextPart, Tag("text")], Annotated[OpaquePart, Tag("other")]],
    Discriminator(_part_kind),
]


class InboundMessage(BaseModel):
    role: str = Field(..., description="'user', 'assistant' or 'system'")
    parts: List[Part] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("role")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        return value.strip().lower()


class MessageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    created_at: str = Field(..., alias="createdAt")


class StoredMessage(BaseModel):
    """A persisted conversation entry. Serialized as {role, content, metadata: {createdAt}}."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    metadata: MessageMetadata

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        return value

    @property
    def created_at(self) -> str:
        return self.metadata.created_at

    def as_turn(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
