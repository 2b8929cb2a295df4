"""Prompt templates and fallback texts for the two text flows."""

from __future__ import annotations


def build_adaptation_prompt(artefact: str, profile: str, original_description: str) -> str:
    return (
        f'Adapt the following description of the artefact "{artefact}" to align with the interests, '
        f"expectations, storytelling and engagement styles of a visitor with the \"{profile}\" profile. "
        f"Description: {original_description}."
    )


def build_more_info_prompt(artefact: str, profile: str, current_description: str | None = None) -> str:
    prompt = (
        f'Tell me more about the artefact "{artefact}". Keep the interests, expectations, storytelling '
        f'and engagement styles of a visitor with the "{profile}" profile, and add details that were '
        "not covered so far."
    )
    if current_description:
        prompt += f" The visitor has already read: {current_description}"
    return prompt


def adaptation_fallback(original_description: str) -> str:
    return f"The adaptation failed. However, here's the original artefact description:\n\n{original_description}"


def more_info_fallback(artefact: str, current_description: str | None = None) -> str:
    if current_description:
        return current_description
    return f'More information about "{artefact}" is not available right now. Please try again shortly.'
