from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(BaseModel):
    session_id: str | None = None
    message: str = Field(min_length=1)
    model: str | None = None


class StopRequest(BaseModel):
    session_id: str


class StopResponse(BaseModel):
    stopped: bool


class WebSource(BaseModel):
    title: str
    url: str


class ChatFinal(BaseModel):
    session_id: str
    answer: str
    status: Literal["completed", "aborted", "research_failed", "model_failed"]
    error: str | None = None
    sources: list[WebSource] = Field(default_factory=list)


class ModelEntry(BaseModel):
    id: str
    object: str = "model"
    owned_by: str = ""


class ModelsResponse(BaseModel):
    data: list[ModelEntry]


class ModelTestRequest(BaseModel):
    model: str = Field(min_length=1)


class ModelTestResponse(BaseModel):
    model: str
    available: bool


class SettingsResponse(BaseModel):
    server_url: str
    server_history: list[str]
    search_paths: list[str]
    file_types: list[str]
    last_model: str | None = None


class SettingsUpdateRequest(BaseModel):
    server_url: str | None = None
    reset_server_url: bool = False
    clear_server_history: bool = False
    search_paths: list[str] | None = None
    file_types: list[str] | None = None
    last_model: str | None = None


class LocalSearchRequest(CamelModel):
    query: str | None = None
    search_paths: list[str] | None = None
    file_types: list[str] | None = None


class LocalSearchHit(CamelModel):
    file_path: str
    file_name: str
    file_type: str
    snippet: str
    last_modified: datetime
    relevance_score: float
    match_type: Literal["filename and content", "filename only", "content only"]


class LocalSearchResponse(CamelModel):
    results: list[LocalSearchHit]
    search_paths: list[str]


class ValidatePathRequest(BaseModel):
    path: str = ""


class ValidatePathResponse(CamelModel):
    is_valid: bool
