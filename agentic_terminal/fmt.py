"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

MAX_OUTPUT_LINES = 40


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int | None, token_est: int | None = None) -> None:
    title = f"Turn {n}" if max_n is None else f"Turn {n}/{max_n}"
    if token_est is not None:
        title += f" (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={finish_reason}", style=style)
    _console.print(text)


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  \u2713 Session finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Session finished: {turns} turns, exit={exit_code}", style="bold red")
        )


# -- Commands ----------------------------------------------------------------


def command(text: str) -> None:
    lines = text.splitlines() or [""]
    header = Text()
    header.append("  $ ", style="bold magenta")
    header.append(lines[0], style="bold magenta")
    _console.print(header)
    for line in lines[1:]:
        _console.print(Text(f"    {line}", style="magenta"))


def command_output(
    output: str, exit_code: int, elapsed: float, *, timed_out: bool = False
) -> None:
    lines = output.splitlines()
    shown = lines[:MAX_OUTPUT_LINES]
    for line in shown:
        _console.print(Text(f"    {line}", style="dim"))
    if len(lines) > len(shown):
        _console.print(
            Text(f"    ... ({len(lines) - len(shown)} more lines)", style="dim italic")
        )
    if not lines:
        _console.print(Text("    (no output)", style="dim italic"))

    status = Text()
    if timed_out:
        status.append(f"  \u2717 interrupted after timeout  {elapsed:.1f}s", style="bold red")
    elif exit_code == 0:
        status.append(f"  \u2713 exit 0  {elapsed:.1f}s", style="green")
    else:
        status.append(f"  \u2717 exit {exit_code}  {elapsed:.1f}s", style="red")
    _console.print(status)


def malformed_response(reason: str, response: str) -> None:
    line = Text()
    line.append("  \u26a0 Unparseable response: ", style="yellow")
    line.append(reason, style="yellow")
    _console.print(line)
    for raw in response.splitlines()[:5]:
        _console.print(Text(f"    {raw}", style="dim yellow"))


def context_warning(token_est: int, context_length: int) -> None:
    pct = 100 * token_est // max(context_length, 1)
    warning(f"prompt uses ~{token_est} of {context_length} context tokens ({pct}%)")


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
