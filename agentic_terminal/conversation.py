"""Append-only conversation state: the task plus every turn so far."""

from dataclasses import asdict, dataclass

NO_OUTPUT = "(no output)"
MALFORMED_HINT = "Reply with exactly one shell command, or `exit` when the task is done."


@dataclass(frozen=True)
class Turn:
    """One exchange with the model. Never mutated after creation."""

    response: str
    kind: str  # "command" | "terminate" | "malformed"
    command: str | None = None
    output: str | None = None
    exit_code: int | None = None
    timed_out: bool = False
    reason: str | None = None

    @classmethod
    def for_command(
        cls,
        response: str,
        command: str,
        output: str,
        exit_code: int,
        timed_out: bool = False,
    ) -> "Turn":
        return cls(
            response=response,
            kind="command",
            command=command,
            output=output,
            exit_code=exit_code,
            timed_out=timed_out,
        )

    @classmethod
    def for_termination(cls, response: str) -> "Turn":
        return cls(response=response, kind="terminate")

    @classmethod
    def for_malformed(cls, response: str, reason: str) -> "Turn":
        return cls(response=response, kind="malformed", reason=reason)


class Conversation:
    """Task and ordered turns; render() is what the model sees each turn."""

    def __init__(self, task: str):
        self._task = task
        self._turns: list[Turn] = []

    @property
    def task(self) -> str:
        return self._task

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def record(self, turn: Turn) -> None:
        self._turns.append(turn)

    def command_turns(self) -> list[Turn]:
        return [t for t in self._turns if t.kind == "command"]

    def render(self) -> str:
        parts = [f"Task: {self._task}"]
        for n, turn in enumerate(self._turns, start=1):
            parts.append(_render_turn(n, turn))
        return "\n\n".join(parts)

    def to_dict(self) -> dict:
        return {"task": self._task, "turns": [asdict(t) for t in self._turns]}


def _render_turn(n: int, turn: Turn) -> str:
    lines = [f"[turn {n}]"]
    if turn.kind == "command":
        lines.append(f"$ {turn.command}")
        lines.append(turn.output if turn.output else NO_OUTPUT)
        if turn.exit_code:
            lines.append(f"[exit status {turn.exit_code}]")
        if turn.timed_out:
            lines.append("[interrupted after timeout]")
    elif turn.kind == "malformed":
        lines.append(f"(unparseable response: {turn.reason})")
        lines.append(turn.response)
        lines.append(MALFORMED_HINT)
    else:
        lines.append("$ exit")
    return "\n".join(lines)
