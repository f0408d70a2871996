"""
Prompt Manager Service

Loads prompt templates from prompts.json, renders them with variable
substitution and hot-reloads the file when it changes on disk.
"""

import json
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Optional

from dialog_ethics_backend.config import PROMPTS_FILE


class PromptManager:
    """
    Centralized manager for analysis prompts

    Features:
    - Load prompts from prompts.json
    - Render templates with $variable substitution
    - Hot-reload on file changes
    """

    def __init__(self, prompts_file: str = PROMPTS_FILE):
        self.prompts_file = Path(prompts_file)

        self._prompts_cache: Dict[str, Any] = {}
        self._file_mtime: Optional[float] = None

        self.reload()

    def reload(self) -> None:
        """Reload prompts from file (hot-reload support)"""
        if not self.prompts_file.exists():
            raise FileNotFoundError(f"Prompts file not found: {self.prompts_file}")

        with open(self.prompts_file, 'r', encoding='utf-8') as f:
            self._prompts_cache = json.load(f)

        self._file_mtime = self.prompts_file.stat().st_mtime

    def _check_reload(self) -> None:
        if self.prompts_file.exists():
            current_mtime = self.prompts_file.stat().st_mtime
            if current_mtime != self._file_mtime:
                self.reload()

    def get_prompt(self, prompt_name: str) -> Dict[str, Any]:
        """
        Get a specific prompt configuration

        Raises:
            KeyError: If prompt not found
        """
        self._check_reload()

        if prompt_name not in self._prompts_cache.get("prompts", {}):
            raise KeyError(f"Prompt not found: {prompt_name}")

        return self._prompts_cache["prompts"][prompt_name].copy()

    def _substitute(self, prompt_name: str, template_str: str, variables: Dict[str, Any]) -> str:
        try:
            return Template(template_str).substitute(variables)
        except KeyError as e:
            missing_var = str(e).strip("'")
            raise ValueError(
                f"Missing required variable '{missing_var}' for prompt '{prompt_name}'"
            )

    def render_prompt(self, prompt_name: str, variables: Dict[str, Any]) -> str:
        """
        Render a prompt template with variable substitution

        Example:
            >>> pm = PromptManager()
            >>> rendered = pm.render_prompt("summary", {"format_label": "bullet point format"})
        """
        prompt_config = self.get_prompt(prompt_name)
        return self._substitute(prompt_name, prompt_config.get("template", ""), variables)

    def render_messages(self, prompt_name: str, variables: Dict[str, Any]) -> List[Dict[str, str]]:
        """Render the system template and the user instruction as chat messages."""
        prompt_config = self.get_prompt(prompt_name)
        messages = [
            {
                "role": "system",
                "content": self._substitute(prompt_name, prompt_config.get("template", ""), variables),
            }
        ]
        instruction = prompt_config.get("user_instruction")
        if instruction:
            messages.append(
                {"role": "user", "content": self._substitute(prompt_name, instruction, variables)}
            )
        return messages

    def get_prompt_metadata(self, prompt_name: str) -> Dict[str, Any]:
        """Temperature, max_tokens and output format for a prompt, falling back to the file defaults."""
        prompt_config = self.get_prompt(prompt_name)
        defaults = self._prompts_cache.get("defaults", {})

        return {
            "description": prompt_config.get("description", ""),
            "temperature": prompt_config.get("temperature", defaults.get("default_temperature", 0.3)),
            "max_tokens": prompt_config.get("max_tokens", defaults.get("default_max_tokens", 1000)),
            "output_format": prompt_config.get("output_format", "json"),
        }

    def list_prompts(self) -> List[str]:
        self._check_reload()
        return list(self._prompts_cache.get("prompts", {}).keys())


# Global singleton instance
_prompt_manager_instance: Optional[PromptManager] = None


def get_prompt_manager() -> PromptManager:
    global _prompt_manager_instance

    if _prompt_manager_instance is None:
        _prompt_manager_instance = PromptManager(prompts_file=PROMPTS_FILE)

    return _prompt_manager_instance
