"""
Prompt templates offered to clients as starting points for new sessions.
"""

from pathlib import Path
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .session import SessionType


class PromptTemplate(BaseModel):
    """A named command a client can turn into a session."""
    id: str
    name: str
    description: str
    command: str
    default_directory: str = Field(default_factory=lambda: str(Path.home()))
    type: SessionType = SessionType.INTERACTIVE_PTY
    allow_file_upload: bool = False

    model_config = ConfigDict(frozen=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


PROMPT_TEMPLATES: List[PromptTemplate] = [
    PromptTemplate(
        id="kiro-interactive",
        name="Kiro CLI (Interactive)",
        description="Launch Kiro CLI in interactive chat mode",
        command="kiro-cli chat",
        allow_file_upload=True,
    ),
    PromptTemplate(
        id="kiro-non-interactive",
        name="Kiro CLI (Non-Interactive)",
        description="Run Kiro CLI command and exit",
        command="kiro-cli chat",
        allow_file_upload=True,
    ),
]


def all_prompt_templates() -> List[PromptTemplate]:
    return list(PROMPT_TEMPLATES)


def get_prompt_template(template_id: str) -> Optional[PromptTemplate]:
    for template in PROMPT_TEMPLATES:
        if template.id == template_id:
            return template
    return None


__all__ = [
    'PromptTemplate',
    'PROMPT_TEMPLATES',
    'all_prompt_templates',
    'get_prompt_template',
]
