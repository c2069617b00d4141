"""Protocol layer: request/response DTOs and duplex client frames shared by API and gateway."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter

SESSION_ID_PATTERN = r"^[A-Za-z0-9_.:-]{1,128}$"

SessionStatusType = Literal["idle", "streaming", "closed"]


class SubmitRequest(BaseModel):
    """Prompt submission; an absent session id creates a new session."""

    session_id: str | None = Field(
        default=None,
        pattern=SESSION_ID_PATTERN,
        validation_alias=AliasChoices("session_id", "sessionId"),
    )
    prompt: str = Field(..., min_length=1, max_length=100_000)
    working_context: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("working_context", "workingContext"),
    )


class SubmitResponse(BaseModel):
    session_id: str
    prompt_id: str
    status: SessionStatusType
    last_sequence: int


class SessionSummaryDto(BaseModel):
    """Session card for listings."""

    session_id: str
    status: SessionStatusType
    listener_count: int
    prompt_count: int
    last_sequence: int
    created_at: str
    updated_at: str


class SessionDetailDto(SessionSummaryDto):
    """Session state including replay window bounds."""

    created_by: str | None = None
    active_prompt_id: str | None = None
    first_retained_sequence: int | None = None
    retained: int = 0


class ResumeMessage(BaseModel):
    op: Literal["resume"]
    last_acked_sequence: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("last_acked_sequence", "lastAckedSequence"),
    )


class SubmitPromptMessage(BaseModel):
    op: Literal["submit_prompt"]
    prompt: str = Field(..., min_length=1, max_length=100_000)
    working_context: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("working_context", "workingContext"),
    )


ClientMessage = Annotated[Union[ResumeMessage, SubmitPromptMessage], Field(discriminator="op")]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
