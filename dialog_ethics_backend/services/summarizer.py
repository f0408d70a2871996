import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from dialog_ethics_backend.models import AnalysisStatus, Flag, Message, ModelSettings, utcnow
from dialog_ethics_backend.services.demo_responses import demo_summary
from dialog_ethics_backend.services.llm_client import GatewayError, ModelGateway
from dialog_ethics_backend.services.prompt_manager import PromptManager

logger = logging.getLogger(__name__)

SUMMARY_FORMATS = ("bullets", "paragraph")
EMPTY_CONVERSATION_SUMMARY = "No messages to summarize."


@dataclass
class SummaryResult:
    summary: str
    format: str
    conversation_length: int
    flags_count: int
    status: str = AnalysisStatus.OK.value
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "timestamp": self.generated_at.isoformat(),
            "format": self.format,
            "conversationLength": self.conversation_length,
            "flagsCount": self.flags_count,
            "status": self.status,
        }


def normalize_format(output_format: Optional[str]) -> str:
    value = str(output_format or "").strip().lower()
    return value if value in SUMMARY_FORMATS else "bullets"


class Summarizer:
    """Free-text summary of a conversation, its flags and the user's context."""

    def __init__(self, gateway: ModelGateway, prompt_manager: PromptManager):
        self.gateway = gateway
        self.prompt_manager = prompt_manager

    def build_messages(
        self,
        messages: Sequence[Message],
        flags: Sequence[Flag],
        context: Optional[str],
        output_format: str,
    ) -> List[Dict[str, str]]:
        history = "\n".join(f"{m.role.value.upper()}: {m.content}" for m in messages)

        # Empty sections are left out of the prompt entirely.
        flagged_section = ""
        if flags:
            flagged_section = "\nFLAGGED CONTENT:\n" + "\n".join(
                f'- {f.category} ({f.severity.value}): {f.reason} - "{f.excerpt}"' for f in flags
            ) + "\n"
        context_section = ""
        if context and context.strip():
            context_section = f"\nADDITIONAL CONTEXT:\n{context.strip()}\n"

        return self.prompt_manager.render_messages(
            "summary",
            {
                "format_label": "paragraph format" if output_format == "paragraph" else "bullet point format",
                "conversation_history": history,
                "flagged_section": flagged_section,
                "context_section": context_section,
            },
        )

    async def summarize(
        self,
        messages: Sequence[Message],
        flags: Sequence[Flag],
        context: Optional[str],
        settings: ModelSettings,
        output_format: str = "bullets",
    ) -> SummaryResult:
        output_format = normalize_format(output_format)
        messages = list(messages)
        flags = list(flags)
        if not messages:
            return SummaryResult(
                summary=EMPTY_CONVERSATION_SUMMARY,
                format=output_format,
                conversation_length=0,
                flags_count=len(flags),
            )

        status = AnalysisStatus.OK
        try:
            metadata = self.prompt_manager.get_prompt_metadata("summary")
            completion = await self.gateway.chat_completion(
                settings,
                self.build_messages(messages, flags, context, output_format),
                temperature=metadata["temperature"],
                max_tokens=metadata["max_tokens"],
                demo_reply=lambda: demo_summary(messages, flags, output_format),
            )
            summary = completion.content.strip() or "Failed to generate summary"
        except GatewayError as exc:
            logger.warning("Summary generation failed: %s", exc.message)
            summary = f"Error generating summary: {exc.message}"
            status = AnalysisStatus.ERROR
        except Exception as exc:
            logger.exception("Unexpected summary failure")
            summary = f"Error generating summary: {exc}"
            status = AnalysisStatus.ERROR

        return SummaryResult(
            summary=summary,
            format=output_format,
            conversation_length=len(messages),
            flags_count=len(flags),
            status=status.value,
        )
