"""Branch CLI command execution with classified retries.

CommandExecutor pipes a JSON payload into ``but cursor <subcommand>`` and
classifies the result (see classifier.py). Only contention failures are
retried, with exponential backoff driven by tenacity under a per-subcommand
RetryPolicy. Exhausted retries and unrecognized failures raise
CommandFatalError; every other outcome is returned as a value.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import tenacity

from butler_sync.engine.classifier import FailureClass, classify_command_failure
from butler_sync.exceptions import CommandFatalError, TransientCommandError

logger = logging.getLogger(__name__)

# Exit code reported when the executable itself cannot be started.
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Runs one external process to completion."""

    async def __call__(
        self, argv: Sequence[str], *, stdin: str | None = None
    ) -> CommandResult: ...


class SubprocessRunner:
    """CommandRunner backed by asyncio subprocesses in a fixed directory."""

    def __init__(self, cwd: str | Path) -> None:
        self.cwd = str(cwd)

    async def __call__(
        self, argv: Sequence[str], *, stdin: str | None = None
    ) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.cwd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(EXIT_NOT_FOUND, "", str(exc))

        out, err = await proc.communicate(stdin.encode("utf-8") if stdin is not None else None)
        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one subcommand.

    Attributes:
        max_retries: Retries after the first attempt.
        base_seconds: First backoff delay; doubles on every retry.
    """

    max_retries: int
    base_seconds: float

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


# "stop" finalizes a turn and gets the larger budget.
DEFAULT_RETRY_POLICIES: Mapping[str, RetryPolicy] = {
    "stop": RetryPolicy(max_retries=5, base_seconds=0.5),
    "default": RetryPolicy(max_retries=3, base_seconds=0.2),
}


class CommandOutcome(str, enum.Enum):
    """Non-fatal result of CommandExecutor.run()."""

    SUCCESS = "success"
    NOOP = "noop"  # expected-benign failure, nothing to do
    SKIPPED = "skipped"  # recoverable race


class CommandExecutor:
    """Runs ``but cursor`` subcommands with classified, bounded retries."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        binary: str = "but",
        policies: Mapping[str, RetryPolicy] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._runner = runner
        self._binary = binary
        self._policies = dict(DEFAULT_RETRY_POLICIES)
        if policies:
            self._policies.update(policies)
        self._sleep = sleep

    def policy_for(self, subcommand: str) -> RetryPolicy:
        return self._policies.get(subcommand, self._policies["default"])

    async def run(self, subcommand: str, payload: Mapping[str, Any]) -> CommandOutcome:
        """Run ``but cursor <subcommand>`` with *payload* on stdin.

        Returns:
            SUCCESS, NOOP (expected-benign) or SKIPPED (recoverable race).

        Raises:
            CommandFatalError: Retries exhausted or unrecognized failure.
        """
        policy = self.policy_for(subcommand)
        body = json.dumps(payload)
        retryer = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(TransientCommandError),
            wait=tenacity.wait_exponential(multiplier=policy.base_seconds, min=0, max=60),
            stop=tenacity.stop_after_attempt(policy.max_attempts),
            sleep=self._sleep,
            before_sleep=self._log_retry(subcommand),
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    return await self._attempt(
                        subcommand,
                        body,
                        payload,
                        attempt.retry_state.attempt_number,
                    )
        except TransientCommandError as exc:
            logger.error(
                "cursor-error",
                extra={"data": {
                    "subcommand": subcommand,
                    "exitCode": exc.exit_code,
                    "stderr": exc.stderr.strip(),
                    "attempt": policy.max_attempts,
                    "reason": "retries-exhausted",
                }},
            )
            raise CommandFatalError(
                subcommand, exc.exit_code, exc.stderr, attempts=policy.max_attempts
            ) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    async def _attempt(
        self,
        subcommand: str,
        body: str,
        payload: Mapping[str, Any],
        attempt: int,
    ) -> CommandOutcome:
        result = await self._runner([self._binary, "cursor", subcommand], stdin=body)
        classification = classify_command_failure(result.exit_code, result.stderr)
        conversation = payload.get("conversation_id")
        cls = classification.failure_class

        if cls is FailureClass.SUCCESS:
            logger.info(
                "cursor-ok",
                extra={"data": {
                    "subcommand": subcommand,
                    "conversationId": conversation,
                    "attempt": attempt,
                }},
            )
            return CommandOutcome.SUCCESS

        if cls is FailureClass.EXPECTED_BENIGN:
            logger.info(
                "cursor-noop",
                extra={"data": {
                    "subcommand": subcommand,
                    "attempt": attempt,
                    "pattern": classification.matched_pattern,
                }},
            )
            return CommandOutcome.NOOP

        if cls is FailureClass.RECOVERABLE_RACE:
            logger.warning(
                "cursor-race",
                extra={"data": {
                    "subcommand": subcommand,
                    "exitCode": result.exit_code,
                    "stderr": result.stderr.strip(),
                    "attempt": attempt,
                    "conversationId": conversation,
                }},
            )
            return CommandOutcome.SKIPPED

        if cls is FailureClass.RETRYABLE_TRANSIENT:
            raise TransientCommandError(
                subcommand, result.exit_code, result.stderr, classification.matched_pattern or ""
            )

        logger.error(
            "cursor-error",
            extra={"data": {
                "subcommand": subcommand,
                "exitCode": result.exit_code,
                "stderr": result.stderr.strip(),
                "attempt": attempt,
            }},
        )
        raise CommandFatalError(subcommand, result.exit_code, result.stderr, attempts=attempt)

    @staticmethod
    def _log_retry(subcommand: str) -> Callable[[tenacity.RetryCallState], None]:
        def before_sleep(state: tenacity.RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.info(
                "cursor-retry",
                extra={"data": {
                    "subcommand": subcommand,
                    "attempt": state.attempt_number,
                    "delayMs": int((state.next_action.sleep if state.next_action else 0) * 1000),
                    "pattern": getattr(exc, "pattern", None),
                }},
            )

        return before_sleep
