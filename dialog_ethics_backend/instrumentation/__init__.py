"""
Instrumentation helpers for model provider calls.
"""

from .response_parsing import (
    CompletionUsage,
    extract_message_content,
    parse_completion_usage,
)

__all__ = [
    'CompletionUsage',
    'extract_message_content',
    'parse_completion_usage',
]
