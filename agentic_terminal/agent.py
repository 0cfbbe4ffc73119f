"""Agent loop controller, LiteLLM model client and CLI entry point."""

import argparse
import enum
import os
import sys
import time
from functools import lru_cache
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _UNSET,
    PROJECT_CONFIG_NAME,
    PROVIDERS,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
)
from .conversation import Conversation, Turn
from .parser import Malformed, Terminate, parse_response
from .report import (
    AgentError,
    ConfigError,
    ModelCallError,
    ReportCollector,
    SessionClosedError,
    TurnLimitError,
    write_report,
)
from .shell import CommandOutput, ShellSession

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
CONTEXT_WARNING_RATIO = 0.9

DEFAULT_MODELS = {
    "anthropic": "claude-3-5-sonnet-latest",
    "openai": "gpt-4o",
}
API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}
LMSTUDIO_BASE_URL = "http://127.0.0.1:1234"


@lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(*texts: str) -> int:
    """Count tokens across prompt texts using tiktoken."""
    enc = _encoder()
    total = sum(len(enc.encode(t, disallowed_special=())) for t in texts if t)
    # ~4 tokens of overhead per message for role and separators
    return total + 4 * len(texts)


def load_system_prompt(system_prompt: str | None = None) -> str:
    if system_prompt:
        return system_prompt
    return DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")


# -- Model client ------------------------------------------------------------


def resolve_provider(
    provider: str,
    model: str | None,
    api_key: str | None,
    base_url: str | None,
) -> tuple[str, dict]:
    """Return (litellm_model, provider_kwargs) for a provider.

    Raises ConfigError when the provider is unknown or credentials are missing.
    """
    if provider == "lmstudio":
        if not model:
            raise ConfigError("--model is required when --provider is lmstudio")
        base = (base_url or LMSTUDIO_BASE_URL).rstrip("/")
        return f"openai/{model}", {
            "api_base": f"{base}/v1",
            "api_key": api_key or "lm-studio",
        }

    if provider in DEFAULT_MODELS:
        bare_id = (model or DEFAULT_MODELS[provider]).removeprefix(f"{provider}/")
        env_name = API_KEY_ENV[provider]
        key = api_key or os.environ.get("API_KEY") or os.environ.get(env_name)
        if not key:
            raise ConfigError(
                f"--api-key, API_KEY or {env_name} env var required for {provider} provider"
            )
        kwargs = {"api_key": key}
        if base_url:
            kwargs["api_base"] = base_url
        return f"{provider}/{bare_id}", kwargs

    raise ConfigError(f"unknown provider {provider!r}")


def call_llm(
    model_str,
    messages,
    max_output_tokens,
    temperature,
    top_p,
    seed,
    verbose,
    *,
    num_retries=0,
    **provider_kwargs,
):
    """Call LiteLLM. Returns (content, finish_reason); raises ModelCallError."""
    import litellm

    litellm.suppress_debug_info = True

    if verbose:
        extras = []
        if temperature is not None:
            extras.append(f"temperature={temperature}")
        if top_p is not None:
            extras.append(f"top_p={top_p}")
        if seed is not None:
            extras.append(f"seed={seed}")
        extra_str = ", " + ", ".join(extras) if extras else ""
        fmt.model_info(
            f"Calling model {model_str} with max_tokens={max_output_tokens}{extra_str}"
        )

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        max_tokens=max_output_tokens,
        **provider_kwargs,
    )
    for key, val in [("temperature", temperature), ("top_p", top_p), ("seed", seed)]:
        if val is not None:
            completion_kwargs[key] = val
    if num_retries:
        completion_kwargs["num_retries"] = num_retries

    try:
        response = litellm.completion(**completion_kwargs)
    except Exception as e:
        raise ModelCallError(f"LLM call failed: {e}") from e

    try:
        choice = response.choices[0]
    except (AttributeError, IndexError, TypeError) as e:
        raise ModelCallError(f"LLM returned no choices: {e}") from e
    return choice.message.content or "", choice.finish_reason


class LLMClient:
    """Model client with the single operation complete(prompt) -> text."""

    def __init__(
        self,
        model_str: str,
        *,
        system_prompt: str | None = None,
        max_output_tokens: int = 1024,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        num_retries: int = 0,
        verbose: bool = False,
        **provider_kwargs,
    ):
        self.model_str = model_str
        self.system_prompt = system_prompt
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.num_retries = num_retries
        self.verbose = verbose
        self.provider_kwargs = provider_kwargs

    def complete(self, prompt: str) -> str:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})

        t0 = time.monotonic()
        content, finish_reason = call_llm(
            self.model_str,
            messages,
            self.max_output_tokens,
            self.temperature,
            self.top_p,
            self.seed,
            self.verbose,
            num_retries=self.num_retries,
            **self.provider_kwargs,
        )
        if self.verbose:
            fmt.llm_timing(time.monotonic() - t0, finish_reason)
        return content


# -- Agent loop --------------------------------------------------------------


class LoopState(enum.Enum):
    STARTING = "starting"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_COMMAND = "executing_command"
    TERMINATED = "terminated"
    FAILED = "failed"


class AgentLoop:
    """Drive the turn cycle until the model exits or a fatal error occurs.

    Each turn renders the conversation, asks the model for the next
    response, parses it, and either runs the command in the shell session
    or stops. Malformed responses are recorded and the loop continues.
    The shell session is closed on every exit path.

    There is no turn limit unless max_turns is given.
    """

    def __init__(
        self,
        task: str,
        client,
        *,
        shell: ShellSession | None = None,
        max_turns: int | None = None,
        command_timeout: float | None = None,
        context_length: int | None = None,
        system_prompt: str | None = None,
        verbose: bool = False,
        report: ReportCollector | None = None,
    ):
        self.client = client
        self.shell = shell if shell is not None else ShellSession()
        self.max_turns = max_turns
        self.command_timeout = command_timeout
        self.context_length = context_length
        self.system_prompt = system_prompt
        self.verbose = verbose
        self.report = report

        self.conversation = Conversation(task)
        self.state = LoopState.STARTING
        self.turns = 0
        self.error: AgentError | None = None
        self._context_warned = False

    def run(self) -> Conversation:
        """Run to completion. Returns the conversation; raises AgentError on failure."""
        if self.state is not LoopState.STARTING:
            raise AgentError(f"agent loop cannot run from state {self.state.value}")
        try:
            self.shell.start()
            while self.state is not LoopState.TERMINATED:
                if self.max_turns is not None and self.turns >= self.max_turns:
                    raise TurnLimitError(
                        f"max turns ({self.max_turns}) reached before the model exited"
                    )
                self.turns += 1
                self._step(self.turns)
        except AgentError as e:
            self.error = e
            self.state = LoopState.FAILED
            raise
        except BaseException:
            self.state = LoopState.FAILED
            raise
        finally:
            self.shell.close()
        return self.conversation

    def _step(self, n: int) -> None:
        self.state = LoopState.AWAITING_MODEL
        prompt = self.conversation.render()

        token_est = None
        if self.verbose or self.context_length:
            token_est = estimate_tokens(self.system_prompt or "", prompt)
        if self.verbose:
            fmt.turn_header(n, self.max_turns, token_est)
        if self.context_length and token_est is not None:
            self._check_context(n, token_est)

        response = self._ask_model(n, prompt)
        parsed = parse_response(response)

        if isinstance(parsed, Terminate):
            self.conversation.record(Turn.for_termination(response))
            if self.report:
                self.report.record_termination(n)
            self.shell.close()
            self.state = LoopState.TERMINATED
            if self.verbose:
                fmt.command("exit")
                fmt.completion(n, "ok")
            return

        if isinstance(parsed, Malformed):
            self.conversation.record(Turn.for_malformed(response, parsed.reason))
            if self.report:
                self.report.record_malformed(n, parsed.reason)
            if self.verbose:
                fmt.malformed_response(parsed.reason, response)
            else:
                fmt.warning(f"turn {n}: unparseable model response ({parsed.reason})")
            return

        self.state = LoopState.EXECUTING_COMMAND
        result = self._execute(n, parsed.text)
        self.conversation.record(
            Turn.for_command(
                response,
                parsed.text,
                result.output,
                result.exit_code,
                timed_out=result.timed_out,
            )
        )

    def _ask_model(self, n: int, prompt: str) -> str:
        t0 = time.monotonic()
        try:
            response = self.client.complete(prompt)
        except Exception as e:
            msg = str(e) if isinstance(e, ModelCallError) else f"model call failed: {e}"
            if self.report:
                self.report.record_llm_call(
                    n, time.monotonic() - t0, len(prompt), error=msg
                )
            raise ModelCallError(f"turn {n}: {msg}") from e
        if self.report:
            self.report.record_llm_call(n, time.monotonic() - t0, len(prompt))
        return response

    def _execute(self, n: int, command: str) -> CommandOutput:
        if self.verbose:
            fmt.command(command)
        try:
            result = self.shell.submit(command, timeout=self.command_timeout)
        except SessionClosedError as e:
            raise SessionClosedError(f"turn {n}: {e}") from e
        if self.verbose:
            fmt.command_output(
                result.output, result.exit_code, result.duration, timed_out=result.timed_out
            )
        if self.report:
            self.report.record_command(
                n,
                command,
                result.exit_code,
                result.duration,
                len(result.output),
                timed_out=result.timed_out,
            )
        return result

    def _check_context(self, n: int, token_est: int) -> None:
        over = token_est > self.context_length * CONTEXT_WARNING_RATIO
        if over and not self._context_warned:
            fmt.context_warning(token_est, self.context_length)
            if self.report:
                self.report.record_context_warning(n, token_est, self.context_length)
        self._context_warned = over


# -- CLI ---------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentic-terminal",
        usage="%(prog)s [options] <task>",
        description="Manifest thy will by granting an LLM agentic access to a shell session.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "task", nargs="?", default=None, help="The task for the model to carry out."
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="LLM provider: anthropic (default), openai, lmstudio (local).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: claude-3-5-sonnet-latest or gpt-4o).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides API_KEY and provider env vars).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per model response (default: 1024).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window size; warns when the prompt passes 90%% of it.",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling (default: provider default).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=_UNSET,
        help="Random seed for reproducible outputs (optional, model support varies).",
    )
    parser.add_argument(
        "--llm-retries",
        type=int,
        default=_UNSET,
        help="Retries for a failed model call (default: 0).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Stop after this many turns (default: no limit).",
    )
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=_UNSET,
        help="Interrupt a command after this many seconds (default: no timeout).",
    )
    parser.add_argument(
        "--shell",
        type=str,
        default=_UNSET,
        help="Shell executable to run (default: bash, falling back to /bin/sh).",
    )
    parser.add_argument(
        "--cwd",
        type=str,
        default=_UNSET,
        help="Starting directory for the shell (default: current directory).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE.",
    )
    parser.add_argument(
        "--no-session-log",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't save the session transcript under the cache directory.",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=_UNSET,
        help="Directory for session transcripts (default: ~/.cache/agentic-terminal/logs).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress the live transcript.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help=f"With --init-config, write ./{PROJECT_CONFIG_NAME} instead of the global config.",
    )

    return parser


def _init_config(project: bool) -> int:
    if project:
        path = Path.cwd() / PROJECT_CONFIG_NAME
    else:
        path = global_config_dir() / "config.toml"
    if path.exists():
        fmt.error(f"{path} already exists, not overwriting")
        return 1
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_config(project=project), encoding="utf-8")
    print(path)
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("agentic-terminal")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        sys.exit(_init_config(args.project))

    if args.task is None or not args.task.strip():
        parser.error("task is required")

    try:
        config = load_config(Path.cwd())
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    for dest in ("max_turns", "command_timeout", "max_output_tokens", "max_context_tokens"):
        value = getattr(args, dest)
        if value is not None and value <= 0:
            parser.error(f"--{dest.replace('_', '-')} must be positive, got {value}")
    if args.llm_retries < 0:
        parser.error(f"--llm-retries must be >= 0, got {args.llm_retries}")
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)

    from .session import Session

    session = Session(
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        max_context_tokens=args.max_context_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        seed=args.seed,
        max_turns=args.max_turns,
        command_timeout=args.command_timeout,
        shell=args.shell,
        cwd=args.cwd,
        system_prompt=args.system_prompt,
        llm_retries=args.llm_retries,
        session_log=not args.no_session_log,
        log_dir=args.log_dir,
        verbose=args.verbose,
    )
    result = session.run(args.task, report=bool(args.report))

    if result.error is not None:
        if result.outcome == "exhausted":
            fmt.warning(str(result.error))
        else:
            fmt.error(str(result.error))

    if args.report and result.report is not None:
        try:
            write_report(result.report, args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
        else:
            if args.verbose:
                fmt.info(f"Report written to {args.report}")

    sys.exit(result.exit_code)
