"""
Plain-text chat transcript parser.

Turns a USER:/AI: transcript into an ordered list of messages that can be
loaded into the conversation store.

Format:
    USER: first line of the user's turn
    continuation lines belong to the open turn
    AI: the assistant's reply
    ASSISTANT: also accepted for the assistant
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from dialog_ethics_backend.models import Message, Role, new_id, utcnow

logger = logging.getLogger(__name__)

MESSAGE_SPACING = timedelta(seconds=60)


@dataclass
class ParsedTranscript:
    """
    A fully parsed transcript.

    Attributes:
        messages: Parsed messages in transcript order
        source_file: Uploaded file name, if any
        parse_metadata: Metadata about the parsing process
    """
    messages: List[Message]
    source_file: Optional[str] = None
    parse_metadata: Dict = field(default_factory=dict)


class TranscriptParser:
    """
    Parser for USER:/AI: chat transcripts.

    Lines before the first prefix are dropped, blank lines are skipped and a
    transcript with no prefixes at all parses to an empty list.
    """

    USER_PATTERN = re.compile(r'^(user):\s*(.*)$', re.IGNORECASE)
    ASSISTANT_PATTERN = re.compile(r'^(ai|assistant):\s*(.*)$', re.IGNORECASE)

    def __init__(self, now: Optional[datetime] = None):
        self.now = now

    def _match_prefix(self, line: str) -> Optional[Tuple[Role, str]]:
        match = self.USER_PATTERN.match(line)
        if match:
            return Role.USER, match.group(2)
        match = self.ASSISTANT_PATTERN.match(line)
        if match:
            return Role.ASSISTANT, match.group(2)
        return None

    def parse_text(self, text: str, source_file: Optional[str] = None) -> ParsedTranscript:
        """
        Parse transcript text into messages.

        Message i gets id "<batch>-<i>", where the batch prefix is unique per
        call. Timestamps are synthetic and one minute apart, with the last
        message at `now`.
        """
        now = self.now or utcnow()
        lines = (text or "").splitlines()
        turns: List[Tuple[Role, List[str]]] = []
        preamble_lines = 0
        current: Optional[Tuple[Role, List[str]]] = None

        for line in lines:
            line = line.strip()
            if not line:
                continue

            prefixed = self._match_prefix(line)
            if prefixed:
                if current:
                    turns.append(current)
                role, first_part = prefixed
                current = (role, [first_part] if first_part else [])
            elif current:
                current[1].append(line)
            else:
                preamble_lines += 1

        if current:
            turns.append(current)

        kept: List[Tuple[Role, str]] = []
        for role, parts in turns:
            content = "\n".join(parts).strip()
            if content:
                kept.append((role, content))
        empty_turns = len(turns) - len(kept)

        # Ids stay unique across imports within a session.
        batch = new_id("msg")
        messages = [
            Message(
                role=role,
                content=content,
                id=f"{batch}-{index}",
                created_at=now - (len(kept) - 1 - index) * MESSAGE_SPACING,
            )
            for index, (role, content) in enumerate(kept)
        ]

        if preamble_lines:
            logger.info(f"Dropped {preamble_lines} transcript lines before the first speaker prefix")

        return ParsedTranscript(
            messages=messages,
            source_file=source_file,
            parse_metadata={
                'total_lines': len(lines),
                'message_count': len(messages),
                'user_messages': sum(1 for m in messages if m.role == Role.USER),
                'assistant_messages': sum(1 for m in messages if m.role == Role.ASSISTANT),
                'skipped_preamble_lines': preamble_lines,
                'empty_turns': empty_turns,
            },
        )


def parse_transcript(text: str) -> List[Message]:
    return TranscriptParser().parse_text(text).messages
