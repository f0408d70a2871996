"""Shared Pydantic request models used across the routers.

Field names are snake_case; the dashboard sends camelCase, accepted via aliases.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dialog_ethics_backend.models import Role


class _RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatMessage(_RequestModel):
    role: str
    content: str

    def to_role(self) -> Role:
        return Role.ASSISTANT if self.role.strip().lower() in {"assistant", "ai"} else Role.USER

    def to_chat_message(self) -> dict:
        return {"role": self.to_role().value, "content": self.content}


class CredentialsRequest(_RequestModel):
    api_key: Optional[str] = Field(None, alias="apiKey")
    base_url: Optional[str] = Field(None, alias="baseUrl")
    model: Optional[str] = None


class ChatRequest(CredentialsRequest):
    messages: Optional[List[ChatMessage]] = None


class ModelsRequest(CredentialsRequest):
    pass


class FlagRequest(CredentialsRequest):
    messages: Optional[List[ChatMessage]] = None
    additional_context: Optional[str] = Field(None, alias="additionalContext")
    category_set: Optional[str] = Field(None, alias="categorySet")


class PrincipleScoringRequest(CredentialsRequest):
    messages: Optional[List[ChatMessage]] = None
    additional_context: Optional[str] = Field(None, alias="additionalContext")


class SummaryMessage(ChatMessage):
    timestamp: Optional[str] = None


class SummaryFlag(_RequestModel):
    type: str
    severity: str = "low"
    reason: str = ""
    flagged_text: str = Field("", alias="flaggedText")


class SummaryRequest(CredentialsRequest):
    conversation_history: Optional[List[SummaryMessage]] = Field(None, alias="conversationHistory")
    flagged_content: List[SummaryFlag] = Field(default_factory=list, alias="flaggedContent")
    context: Optional[str] = None
    format: str = "bullets"


class ConnectRequest(CredentialsRequest):
    category_set: Optional[str] = Field(None, alias="categorySet")
    flagging_enabled: bool = Field(True, alias="flaggingEnabled")
    scoring_enabled: bool = Field(True, alias="scoringEnabled")
    additional_context: Optional[str] = Field(None, alias="additionalContext")


class SessionMessageRequest(_RequestModel):
    content: str = ""
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")


class CutoffRequest(_RequestModel):
    cutoff: int = 0


class SessionSummaryRequest(_RequestModel):
    context: Optional[str] = None
    format: str = "bullets"
