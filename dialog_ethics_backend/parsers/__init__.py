"""Parsers for chat transcript formats."""

from .transcript import ParsedTranscript, TranscriptParser, parse_transcript

__all__ = [
    'ParsedTranscript',
    'TranscriptParser',
    'parse_transcript',
]
