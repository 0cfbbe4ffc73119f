"""Turn parser: read one model response as a command, an exit, or junk.

The grammar is deliberately small:

- the first fenced code block wins if the response has one;
- otherwise the first non-empty line, joined with any backslash
  continuation lines, is the command;
- inline backticks around the whole command and a leading ``$ `` prompt
  are dropped, along with a shell language tag inside ```...```;
- the word ``exit`` on its own ends the session.

Everything after the first command-bearing line or block is ignored, so a
model can never batch several turns' worth of commands into one response.
"""

import re
from dataclasses import dataclass

TERMINATION_PHRASE = "exit"

_FENCE_OPEN = re.compile(r"^\s*```[\w.+-]*\s*$")
_FENCE_CLOSE = re.compile(r"^\s*```\s*$")
_PROMPT_PREFIX = re.compile(r"^\$\s+")
_INLINE_CODE = re.compile(r"^(`{1,3})([^`]+)\1$")
_INLINE_LANG = re.compile(r"^(?:bash|sh|shell|zsh|console|shell-session)\s+(?![\s-])")


@dataclass(frozen=True)
class Command:
    text: str


@dataclass(frozen=True)
class Terminate:
    pass


@dataclass(frozen=True)
class Malformed:
    reason: str


ParsedTurn = Command | Terminate | Malformed


def is_termination(text: str) -> bool:
    """True when text is the termination phrase, ignoring case and a trailing ';'."""
    return text.strip().rstrip(";").strip().lower() == TERMINATION_PHRASE


def _first_fenced_block(lines: list[str]) -> tuple[list[str], bool] | None:
    """Return (body, closed) for the first fenced block, or None if there is none."""
    for i, line in enumerate(lines):
        if _FENCE_OPEN.match(line):
            for j in range(i + 1, len(lines)):
                if _FENCE_CLOSE.match(lines[j]):
                    return lines[i + 1 : j], True
            return lines[i + 1 :], False
    return None


def _first_command_line(lines: list[str]) -> str:
    out: list[str] = []
    for line in lines:
        if not out and not line.strip():
            continue
        out.append(line)
        if not line.rstrip().endswith("\\"):
            break
    return "\n".join(out)


def parse_response(response: str) -> ParsedTurn:
    """Classify a raw model response. Pure; never raises."""
    if response is None or not response.strip():
        return Malformed("empty response")

    lines = response.strip().splitlines()
    fenced = _first_fenced_block(lines)
    if fenced is not None:
        block, closed = fenced
        if not closed:
            return Malformed("unterminated code block")
        text = "\n".join(block).strip()
        if not text:
            return Malformed("empty code block")
    else:
        text = _first_command_line(lines).strip()

    m = _INLINE_CODE.match(text)
    if m:
        text = m.group(2).strip()
        if m.group(1) == "```":
            text = _INLINE_LANG.sub("", text, count=1)
    text = _PROMPT_PREFIX.sub("", text, count=1)
    if not text:
        return Malformed("no command found")
    if is_termination(text):
        return Terminate()
    return Command(text)
