"""Services for the dialog ethics monitor."""

from .conversation_store import ConversationStore, StoreConfig
from .flagging_analyzer import FlaggingAnalyzer
from .llm_client import ModelGateway
from .principle_scorer import PrincipleScorer
from .prompt_manager import PromptManager
from .summarizer import Summarizer

__all__ = [
    'ConversationStore',
    'FlaggingAnalyzer',
    'ModelGateway',
    'PrincipleScorer',
    'PromptManager',
    'StoreConfig',
    'Summarizer',
]
