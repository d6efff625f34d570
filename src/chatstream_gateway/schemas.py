from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = ""


class AttachmentRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str | None = None
    name: str = "attachment"
    mime_type: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("mimeType", "type", "mime_type"),
    )
    size: int = 0
    url: str | None = None

    @field_validator("size")
    @classmethod
    def _validate_size(cls, v: int) -> int:
        if v < 0:
            raise ValueError("size must be >= 0.")
        return v


class CompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: list[ChatMessage]
    model: str = "gpt-4o"
    thread_id: str | None = Field(default=None, validation_alias=AliasChoices("threadId", "thread_id"))
    files: list[AttachmentRef] = Field(default_factory=list)
    search_grounding: bool = Field(
        default=True, validation_alias=AliasChoices("searchGrounding", "search_grounding")
    )

    @field_validator("messages")
    @classmethod
    def _validate_messages(cls, v: list[ChatMessage]) -> list[ChatMessage]:
        if not v:
            raise ValueError("Messages array is required")
        return v

    @model_validator(mode="after")
    def _validate_attachment_turn(self) -> "CompletionRequest":
        if self.files and self.messages[-1].role != "user":
            raise ValueError("The final message must be the user turn when files are attached.")
        return self


class GatewayErrorBody(BaseModel):
    message: str
    type: str = "api_error"
    code: str | None = None


class GatewayErrorResponse(BaseModel):
    error: GatewayErrorBody


def make_error_response(*, message: str, type: str = "api_error", code: str | None = None) -> GatewayErrorResponse:
    return GatewayErrorResponse(error=GatewayErrorBody(message=message, type=type, code=code))
