"""Per-item confirmation before a change is applied.

Confirmation is a capability handed to the reconciler. The interactive
implementation prompts on the console; the others answer without asking
and are used for automated runs and tests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from typing import Protocol

import click

logger = logging.getLogger(__name__)


class Confirmation(str, Enum):
    """Answer to a confirmation prompt."""

    AFFIRM = "affirm"
    AFFIRM_ALL = "affirm_all"  # Affirm this and every remaining item
    DECLINE = "decline"


class Confirmer(Protocol):
    def confirm(self, item: str, target: str) -> Confirmation: ...


class AutoConfirmer:
    """Affirms every item. Used for forced and preview runs."""

    def confirm(self, item: str, target: str) -> Confirmation:
        return Confirmation.AFFIRM


class ScriptedConfirmer:
    """Replays a fixed sequence of answers, declining once exhausted.

    Records every prompt so tests can assert which items were asked about.
    """

    def __init__(self, answers: Iterable[Confirmation]) -> None:
        self._answers = list(answers)
        self.prompts: list[tuple[str, str]] = []

    def confirm(self, item: str, target: str) -> Confirmation:
        self.prompts.append((item, target))
        if not self._answers:
            return Confirmation.DECLINE
        return self._answers.pop(0)


_PROMPT_CHOICES: dict[str, Confirmation] = {
    "y": Confirmation.AFFIRM,
    "a": Confirmation.AFFIRM_ALL,
    "n": Confirmation.DECLINE,
}


class ConsoleConfirmer:
    """Asks the operator on the console: yes, yes to all, or no."""

    def confirm(self, item: str, target: str) -> Confirmation:
        answer = click.prompt(
            f"Apply '{target}' to {item}? [y]es / [a]ll remaining / [n]o",
            type=click.Choice(list(_PROMPT_CHOICES), case_sensitive=False),
            default="n",
            show_choices=False,
        )
        confirmation = _PROMPT_CHOICES[answer.lower()]
        logger.debug(
            "Operator answered confirmation prompt",
            extra={"item": item, "target": target, "answer": confirmation.value},
        )
        return confirmation
