from __future__ import annotations

from typing import Callable

PromptBuilder = Callable[[str, int, str, str], str]


def build_refactor_prompt(path: str, line: int, text: str, additional_prompt: str = "") -> str:
    """Default prompt asking the agent to rewrite one source line."""
    prompt = (
        "You are refactoring one usage site of a symbol.\n"
        f"File: {path}\n"
        f"Line: {line}\n"
        "Current code:\n"
        f"{text}\n\n"
        "Reply with only the replacement code for this line. It may span "
        "several lines. Do not add explanations or markdown fences."
    )
    if additional_prompt:
        prompt += f"\n\nInstructions: {additional_prompt}"
    return prompt
