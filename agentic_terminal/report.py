"""Error taxonomy and JSON report generation for agent runs."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class SessionStartError(AgentError):
    """The persistent shell process could not be launched."""


class SessionClosedError(AgentError):
    """The shell process exited or stopped responding mid-session."""


class ModelCallError(AgentError):
    """The model client failed (network, auth, rate limit, bad response)."""


class TurnLimitError(AgentError):
    """The configured maximum number of turns was reached."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.commands_run = 0
        self.commands_failed = 0
        self.commands_timed_out = 0
        self.malformed_responses = 0
        self.context_warnings = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_command_time = 0.0
        self.max_turn_seen = 0

    def _see_turn(self, turn: int):
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        prompt_chars: int,
        *,
        error: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        self._see_turn(turn)
        event = {
            "turn": turn,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_chars": prompt_chars,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_command(
        self,
        turn: int,
        command: str,
        exit_code: int,
        duration: float,
        output_length: int,
        timed_out: bool = False,
    ):
        self.commands_run += 1
        self.total_command_time += duration
        if exit_code != 0:
            self.commands_failed += 1
        if timed_out:
            self.commands_timed_out += 1
        self._see_turn(turn)
        self.events.append(
            {
                "turn": turn,
                "type": "command",
                "command": command,
                "exit_code": exit_code,
                "duration_s": round(duration, 3),
                "output_length": output_length,
                "timed_out": timed_out,
            }
        )

    def record_malformed(self, turn: int, reason: str):
        self.malformed_responses += 1
        self._see_turn(turn)
        self.events.append({"turn": turn, "type": "malformed", "reason": reason})

    def record_context_warning(self, turn: int, token_est: int, context_length: int):
        self.context_warnings += 1
        self.events.append(
            {
                "turn": turn,
                "type": "context_warning",
                "prompt_tokens_est": token_est,
                "context_length": context_length,
            }
        )

    def record_termination(self, turn: int):
        self._see_turn(turn)
        self.events.append({"turn": turn, "type": "terminate"})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
    ) -> dict:
        result: dict = {
            "outcome": outcome,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "commands_run": self.commands_run,
                "commands_failed": self.commands_failed,
                "commands_timed_out": self.commands_timed_out,
                "malformed_responses": self.malformed_responses,
                "context_warnings": self.context_warnings,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_command_time_s": round(self.total_command_time, 3),
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        write_report(self._last_report, path)

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report


def write_report(report: dict, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)
        f.write("\n")
