"""Interactive prompts and the confirmation gate for destructive actions."""

from __future__ import annotations

from typing import Sequence

from silicon_dualboot.logging import get_logger
from silicon_dualboot.storage.exceptions import UserDeclinedError

from . import console

log = get_logger(source="prompts")

GB = 1000**3


class ConsolePrompter:
    """Reads answers from the terminal."""

    def yesno(self, prompt: str, default: bool = False) -> bool:
        if default:
            prompt += " (Y/n): "
        else:
            prompt += " (y/N): "

        while True:
            res = console.input_prompt(prompt).strip()
            if not res:
                return default
            elif res.lower() in ("y", "yes"):
                return True
            elif res.lower() in ("n", "no"):
                return False

            console.p_warning("Please enter 'Y' or 'N'")

    def choice(self, prompt: str, options: Sequence[str], default: int | None = None) -> int:
        """Show a numbered menu and return the index of the chosen option."""
        keys = [str(i + 1) for i in range(len(options))]
        for key, option in zip(keys, options):
            console.p_choice(f"  {key}: {option}")

        if default is not None:
            prompt += f" ({default + 1})"

        while True:
            res = console.input_prompt(prompt + ": ").strip()
            if res == "" and default is not None:
                return default
            if res not in keys:
                console.p_warning(f"Enter one of the following: {', '.join(keys)}")
                continue
            print()
            return keys.index(res)

    def text(self, prompt: str) -> str:
        return console.input_prompt(prompt + ": ").strip()

    def get_size_gb(
        self,
        prompt: str,
        default: float | None = None,
        minimum: float | None = None,
        maximum: float | None = None,
    ) -> float | None:
        """Ask for a size in GB. Accepts a number, 'min', 'max' or a percentage of maximum."""
        if default is not None:
            prompt += f" ({default:g})"
        answer = console.input_prompt(prompt + ": ").strip()
        return parse_size_gb(answer, default=default, minimum=minimum, maximum=maximum)


def parse_size_gb(
    answer: str,
    default: float | None = None,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float | None:
    """Parse a size answer in GB. Returns None when it cannot be understood."""
    value = answer.strip().upper().replace(" ", "")
    if not value:
        return default
    if value == "MIN" and minimum is not None:
        return minimum
    if value == "MAX" and maximum is not None:
        return maximum
    try:
        if value.endswith("%") and maximum is not None:
            return round(float(value[:-1]) * maximum / 100, 1)
        for suffix in ("GB", "G"):
            if value.endswith(suffix):
                value = value[: -len(suffix)]
                break
        return float(value)
    except ValueError:
        return None


class ConfirmationGate:
    """The one place every destructive action must pass.

    Two steps: a yes/no question defaulting to No, then the user must type
    the identifier of the device about to be modified.
    """

    def __init__(self, prompter=None):
        self.prompter = prompter or ConsolePrompter()

    def confirm_destructive(self, action: str, target: str, details: Sequence[str] = ()) -> None:
        """
        Raises:
            UserDeclinedError: If either confirmation is refused
        """
        console.p_warning(f"WARNING: {action} will destroy all data on {target}.")
        for line in details:
            console.p_warning(f"  {line}")
        if not self.prompter.yesno(f"Proceed with: {action}?", default=False):
            raise UserDeclinedError(action)
        typed = self.prompter.text(f"Type '{target}' to confirm")
        if typed != target:
            console.p_error(f"Confirmation did not match '{target}'.")
            raise UserDeclinedError(f"{action} (identifier confirmation)")
        log.info(f"Destructive action confirmed: {action} on {target}")

    def confirm_override(self, question: str) -> bool:
        """Explicit opt-in for bypassing a safety check. Defaults to No."""
        answer = self.prompter.yesno(question, default=False)
        log.warning(f"Override requested: {question} -> {'yes' if answer else 'no'}")
        return answer

    def ask(self, question: str, default: bool = False) -> bool:
        return self.prompter.yesno(question, default=default)
