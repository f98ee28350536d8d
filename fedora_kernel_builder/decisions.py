"""Operator decision interface.

Every question the workflow asks the operator goes through a Decider, so
the engine can run against a terminal, a non-interactive policy, or a
scripted test double.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from rich.console import Console
from rich.prompt import Confirm, Prompt

from fedora_kernel_builder.errors import OperatorCancelled


@dataclass(frozen=True)
class Choice:
    """One option offered to the operator."""

    key: str
    label: str


class Decider(Protocol):
    """Source of operator decisions."""

    def choose(
        self, prompt: str, choices: list[Choice], default: str | None = None
    ) -> str:
        """Return the key of the selected choice."""
        ...

    def ask_path(self, prompt: str) -> Path:
        """Return a filesystem path entered by the operator."""
        ...

    def confirm(self, prompt: str, default: bool = False) -> bool:
        """Return the operator's yes/no answer."""
        ...


class ConsoleDecider:
    """Ask questions on the terminal with rich prompts."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def choose(
        self, prompt: str, choices: list[Choice], default: str | None = None
    ) -> str:
        self.console.print(f"\n[bold]{prompt}[/bold]")
        for number, choice in enumerate(choices, start=1):
            self.console.print(f"  {number}) {choice.label}")
        numbers = [str(n) for n in range(1, len(choices) + 1)]
        defaults = [n for n, c in zip(numbers, choices) if c.key == default]
        if defaults:
            answer = Prompt.ask(
                "Select",
                choices=numbers,
                default=defaults[0],
                console=self.console,
                show_choices=False,
            )
        else:
            answer = Prompt.ask(
                "Select", choices=numbers, console=self.console, show_choices=False
            )
        return choices[int(answer) - 1].key

    def ask_path(self, prompt: str) -> Path:
        answer = Prompt.ask(prompt, console=self.console)
        return Path(answer).expanduser()

    def confirm(self, prompt: str, default: bool = False) -> bool:
        return Confirm.ask(prompt, default=default, console=self.console)


class NonInteractiveDecider:
    """Answer every question with its default, or cancel if there is none."""

    def choose(
        self, prompt: str, choices: list[Choice], default: str | None = None
    ) -> str:
        if default is None:
            raise OperatorCancelled(f"Decision required in non-interactive mode: {prompt}")
        return default

    def ask_path(self, prompt: str) -> Path:
        raise OperatorCancelled(f"Decision required in non-interactive mode: {prompt}")

    def confirm(self, prompt: str, default: bool = False) -> bool:
        return default


__all__ = ["Choice", "ConsoleDecider", "Decider", "NonInteractiveDecider"]
