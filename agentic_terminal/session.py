"""Public library API for agentic-terminal: Session class and Result dataclass."""

from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .conversation import Conversation
from .report import AgentError, ConfigError, ReportCollector, TurnLimitError
from .sessionlog import save_session_log
from .shell import ShellSession


@dataclass
class Result:
    """Result of one session run."""

    outcome: str  # "success" | "exhausted" | "error"
    turns: int
    conversation: Conversation
    error: AgentError | None
    report: dict | None
    log_path: Path | None = None

    @property
    def exit_code(self) -> int:
        return {"success": 0, "exhausted": 2}.get(self.outcome, 1)


class Session:
    """Programmatic interface to the agent loop.

    Stores configuration as plain attributes. Each .run() starts a fresh
    shell and a fresh conversation. Pass client= to drive the loop with
    any object that has complete(prompt) -> str instead of a LiteLLM model.
    """

    def __init__(
        self,
        *,
        provider: str = "anthropic",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 1024,
        max_context_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        max_turns: int | None = None,
        command_timeout: float | None = None,
        shell: str | None = None,
        cwd: str | None = None,
        system_prompt: str | None = None,
        llm_retries: int = 0,
        session_log: bool = True,
        log_dir: str | None = None,
        verbose: bool = False,
        client=None,
    ):
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.max_turns = max_turns
        self.command_timeout = command_timeout
        self.shell = shell
        self.cwd = cwd
        self.system_prompt = system_prompt
        self.llm_retries = llm_retries
        self.session_log = session_log
        self.log_dir = log_dir
        self.verbose = verbose

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._client = client
        self._model_str: str | None = None
        self._system_content: str | None = None

    def _setup(self) -> None:
        """Resolve the provider and system prompt once. Raises ConfigError."""
        if self._setup_done:
            return

        from .agent import LLMClient, load_system_prompt, resolve_provider

        self._system_content = load_system_prompt(self.system_prompt)

        if self._client is None:
            self._model_str, provider_kwargs = resolve_provider(
                self.provider, self.model, self.api_key, self.base_url
            )
            self._client = LLMClient(
                self._model_str,
                system_prompt=self._system_content,
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
                top_p=self.top_p,
                seed=self.seed,
                num_retries=self.llm_retries,
                verbose=self.verbose,
                **provider_kwargs,
            )
            if self.verbose:
                fmt.model_info(f"Using {self.provider} model {self._model_str}")

        if self.cwd is not None and not Path(self.cwd).expanduser().is_dir():
            raise ConfigError(f"cwd is not a directory: {self.cwd}")

        self._setup_done = True

    def run(self, task: str, *, report: bool = False) -> Result:
        """Run one task to completion. Fatal errors come back in Result.error."""
        from .agent import AgentLoop

        collector = ReportCollector() if report else None
        conversation = Conversation(task)
        turns = 0
        error = None
        looped = False

        try:
            self._setup()
        except AgentError as e:
            error = e
        else:
            cwd = str(Path(self.cwd).expanduser()) if self.cwd else None
            loop = AgentLoop(
                task,
                self._client,
                shell=ShellSession(self.shell, cwd=cwd),
                max_turns=self.max_turns,
                command_timeout=self.command_timeout,
                context_length=self.max_context_tokens,
                system_prompt=self._system_content,
                verbose=self.verbose,
                report=collector,
            )
            looped = True
            try:
                loop.run()
            except AgentError as e:
                error = e
            conversation = loop.conversation
            turns = loop.turns

        if error is None:
            outcome = "success"
        elif isinstance(error, TurnLimitError):
            outcome = "exhausted"
        else:
            outcome = "error"
        error_message = str(error) if error is not None else None

        log_path = None
        if self.session_log and looped:
            try:
                log_path = save_session_log(
                    conversation,
                    outcome=outcome,
                    model=self._model_str,
                    provider=self.provider if self._model_str else None,
                    system_prompt=self._system_content,
                    error_message=error_message,
                    log_dir=self.log_dir,
                )
            except OSError as e:
                fmt.warning(f"failed to write session log: {e}")

        result = Result(
            outcome=outcome,
            turns=turns,
            conversation=conversation,
            error=error,
            report=None,
            log_path=log_path,
        )

        if collector:
            result.report = collector.finalize(
                task=task,
                model=self._model_str or "custom",
                provider=self.provider,
                settings={
                    "max_turns": self.max_turns,
                    "max_output_tokens": self.max_output_tokens,
                    "max_context_tokens": self.max_context_tokens,
                    "temperature": self.temperature,
                    "top_p": self.top_p,
                    "seed": self.seed,
                    "command_timeout": self.command_timeout,
                },
                outcome=outcome,
                exit_code=result.exit_code,
                turns=collector.max_turn_seen,
                error_message=error_message,
            )

        return result
