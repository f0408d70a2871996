"""
Which prior messages an analyzer sees for a given target message.

Assistant turns are judged against the assistant's own recent behaviour, so
their window holds assistant messages only. User turns keep the full recent
exchange.
"""

from typing import Dict, List, Sequence

from dialog_ethics_backend.config import CONTEXT_WINDOW_SIZE
from dialog_ethics_backend.models import Message, Role


def build_context_window(
    messages: Sequence[Message],
    target: Message,
    size: int = CONTEXT_WINDOW_SIZE,
) -> List[Message]:
    """
    Return the analysis window for `target`, oldest first, target last.

    Only messages up to and including the target are considered. If the target
    is not in `messages` it is treated as the newest message.
    """
    size = max(1, int(size))
    target_index = next((i for i, m in enumerate(messages) if m.id == target.id), None)
    if target_index is None:
        prefix = list(messages) + [target]
    else:
        prefix = list(messages[: target_index + 1])

    if target.role == Role.ASSISTANT:
        window = [m for m in prefix if m.role == Role.ASSISTANT][-size:]
        if not window or window[-1].id != target.id:
            window = window[-(size - 1):] if size > 1 else []
            window.append(target)
        return window

    return prefix[-size:]


def to_chat_messages(window: Sequence[Message]) -> List[Dict[str, str]]:
    return [message.to_chat_message() for message in window]
