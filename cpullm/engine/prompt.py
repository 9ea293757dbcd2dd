"""Prompt templating for the turn-tagged chat format."""

from __future__ import annotations

USER_TURN_OPEN = "<start_of_turn>user\n"
USER_TURN_CLOSE = "<end_of_turn>\n"
MODEL_TURN_OPEN = "<start_of_turn>model"


def build_prompt(system_prompt: str, user_prompt: str) -> str:
    """Build the final prompt text.

    The result ends exactly at the model-turn marker so the runtime continues
    generation from there.
    """
    turn = USER_TURN_OPEN + user_prompt + USER_TURN_CLOSE + MODEL_TURN_OPEN
    if system_prompt:
        return system_prompt + "\n" + turn
    return turn
