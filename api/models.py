"""Pydantic request/response models for the prompt-relay API."""

from typing import Any

from pydantic import BaseModel, Field

from prompt_relay.logs import LogEventRequest, LogStatus


# ── Request models ──────────────────────────────────────


class PromptInput(BaseModel):
    text: str
    filename: str | None = None
    input_files: list[str] = Field(default_factory=list)
    exit: bool = False
    merge: bool = False
    prompt_order: int | None = None


class ProjectInput(BaseModel):
    id: str
    name: str
    created_at: str
    output_name: str | None = None
    description: str | None = None
    instructions: str | None = None
    prompts: list[PromptInput] = Field(default_factory=list)


class EdgeInput(BaseModel):
    id: str
    source: str
    target: str
    source_name: str | None = None
    target_name: str | None = None


class SaveScriptRequest(BaseModel):
    projects: list[ProjectInput] = Field(default_factory=list)
    edges: list[EdgeInput] = Field(default_factory=list)


CreateLogRequest = LogEventRequest


# ── Response models ─────────────────────────────────────


class PromptResponse(BaseModel):
    id: str
    text: str
    filename: str | None = None
    input_files: list[str] = []
    exit: bool = False
    merge: bool = False
    prompt_order: int


class ScriptProjectResponse(BaseModel):
    project_id: str
    name: str
    output_name: str | None = None
    description: str | None = None
    instructions: str | None = None
    created_at: str
    prompts: list[PromptResponse] = []


class EdgeResponse(BaseModel):
    edge_id: str
    source: str
    target: str
    source_name: str | None = None
    target_name: str | None = None


class ScriptResponse(BaseModel):
    id: str
    topic_id: str
    user_id: str
    created_at: str
    updated_at: str
    projects: list[ScriptProjectResponse] = []
    edges: list[EdgeResponse] = []


class ExecuteScriptResponse(BaseModel):
    execution_id: str
    script_id: str
    topic_id: str
    status: str
    message: str


class ProjectExecutionResponse(BaseModel):
    id: str
    project_id: str
    project_order: int
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    retry_count: int = 0


class ExecutionResponse(BaseModel):
    id: str
    script_id: str
    topic_id: str
    user_id: str
    status: str
    current_project_id: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str
    updated_at: str


class ExecutionDetailResponse(ExecutionResponse):
    projects: list[ProjectExecutionResponse] = []


class LogEntryResponse(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    user_id: str
    machine_id: str | None = None
    stage: str
    status: LogStatus
    message: str
    metadata: dict[str, Any] | None = None
    created_at: str
