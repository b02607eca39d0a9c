"""Data models for conversations, the model catalog and admin records."""

from __future__ import annotations

import time
import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .config import DEFAULT_TITLE

Role = Literal["user", "assistant", "system"]


def new_id() -> str:
    return str(uuid.uuid4())


class Attachment(BaseModel):
    """A file attached to a message. Content is extracted once, at upload time."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    name: str
    type: str
    size: int
    content: str | None = None
    url: str | None = None


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Role
    content: str
    timestamp: float = Field(default_factory=time.time)
    attachments: list[Attachment] = []


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = DEFAULT_TITLE
    model: str
    messages: list[Message] = []
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @model_validator(mode="after")
    def _check_timestamps(self) -> Conversation:
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self


class ModelInfo(BaseModel):
    id: str
    name: str
    max_tokens: int


class CatalogModel(ModelInfo):
    enabled: bool = False


class Settings(BaseModel):
    """Credentials and enabled models, passed explicitly to whoever needs them."""

    api_key: str = ""
    models: list[ModelInfo] = []


class Company(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    logo: str | None = None
    cnpj: str | None = None
    created_at: float | None = None
    updated_at: float | None = None


# Per-group switches an admin can toggle
GROUP_PERMISSIONS = ("create_chat", "delete_chat", "edit_settings", "manage_users")


class Group(BaseModel):
    id: str = Field(default_factory=new_id)
    company_id: str
    name: str
    authorized_models: list[str] = []
    permissions: dict[str, bool] = {}
    created_at: float | None = None
    updated_at: float | None = None


class GroupMember(BaseModel):
    id: str = Field(default_factory=new_id)
    group_id: str
    user_id: str
