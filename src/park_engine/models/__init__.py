"""Data models."""

from .session import Session, SessionStatus, SessionType, SessionCreate, SessionUpdate
from .prompt import PromptTemplate, all_prompt_templates, get_prompt_template

__all__ = [
    'Session',
    'SessionStatus',
    'SessionType',
    'SessionCreate',
    'SessionUpdate',
    'PromptTemplate',
    'all_prompt_templates',
    'get_prompt_template',
]
