# runner.py
# Idempotent step runner.
#
# The runner owns all control flow. Steps are passive: they answer "already
# done?", do the work, and answer "did it take?". Nothing else.
#
# Control flow per step:
#   cancel? → precondition → skip
#                          ↘ (action → postcondition) × max_attempts
#                            → succeeded | failed → abort? → not attempted
#
# All terminal output is delegated to display.py — no formatting here.

import logging
import threading
import time
from typing import Callable, Sequence

from hostprep import display
from hostprep.models import (
    OnFailure,
    RetryPolicy,
    RunPolicy,
    RunReport,
    Step,
    StepResult,
    StepStatus,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class StepError(Exception):
    """Base class for everything that can go wrong inside a step."""

    kind = "step"

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step
        self.message = message


class PreconditionError(StepError):
    """The precondition raised instead of answering. Treated as NeedsAction."""

    kind = "precondition"


class ActionError(StepError):
    """The action raised or reported failure. Retryable."""

    kind = "action"


class PostconditionError(StepError):
    """The action reported success but verification did not hold. Retryable."""

    kind = "postcondition"


class AbortError(StepError):
    """An abort-policy step exhausted its attempts. Halts the run."""

    kind = "abort"

    def __init__(self, step: str, cause: StepError, result: StepResult | None = None) -> None:
        super().__init__(step, f"{step} failed: {cause.message}")
        self.cause = cause
        self.result = result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _check_unique(steps: Sequence[Step]) -> None:
    seen: set[str] = set()
    for step in steps:
        if step.name in seen:
            raise ValueError(f"Duplicate step name: {step.name!r}")
        seen.add(step.name)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class StepRunner:
    """
    Executes an ordered list of steps, one at a time.

    ``sleep`` is injectable so tests can run retry loops without waiting.

    Example:
        runner = StepRunner(RunPolicy(default_retry=RetryPolicy(max_attempts=2)))
        report = runner.run(steps)
        sys.exit(0 if report.ok else 1)
    """

    def __init__(
        self,
        policy: RunPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._policy = policy or RunPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RunPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Policy resolution
    # ------------------------------------------------------------------

    def _retry_for(self, step: Step) -> RetryPolicy:
        return step.retry if step.retry is not None else self._policy.default_retry

    def _aborts(self, step: Step) -> bool:
        return step.on_failure is OnFailure.ABORT or self._policy.stop_on_failure

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def is_satisfied(self, step: Step) -> bool:
        """
        Evaluate the precondition.

        A precondition that raises is reported as a warning and counts as
        NeedsAction — never silently as AlreadySatisfied.
        """
        try:
            return bool(step.precondition())
        except Exception as exc:
            error = PreconditionError(step.name, _describe(exc))
            logger.warning("Precondition of %s raised: %s", step.name, error.message)
            display.precondition_error(step.name, error.message)
            return False

    def _attempt(self, step: Step) -> None:
        """One action + postcondition round. Raises ActionError / PostconditionError."""
        try:
            outcome = step.action()
        except ActionError:
            raise
        except Exception as exc:
            raise ActionError(step.name, _describe(exc)) from exc
        if outcome is False:
            raise ActionError(step.name, "action reported failure")

        try:
            verified = step.verify()
        except Exception as exc:
            raise PostconditionError(step.name, f"verification raised {_describe(exc)}") from exc
        if not verified:
            raise PostconditionError(step.name, "action completed but verification failed")

    # ------------------------------------------------------------------
    # Single step
    # ------------------------------------------------------------------

    def run_step(self, step: Step, index: int = 0, total: int = 1) -> StepResult:
        """
        Run one step to completion.

        Raises AbortError when an abort-policy step exhausts its attempts;
        the failed result is carried on ``exc.result``.
        """
        started = time.monotonic()
        display.step_start(index, total, step.name, step.description)

        if self.is_satisfied(step):
            display.step_skipped(step.name)
            return StepResult(name=step.name, status=StepStatus.SKIPPED)

        retry = self._retry_for(step)
        sleeps = retry.sleeps()
        attempt = 0

        while True:
            attempt += 1
            display.attempt_start(attempt, retry.max_attempts)
            try:
                self._attempt(step)
            except (ActionError, PostconditionError) as exc:
                # Collaborators raise without knowing which step they serve.
                exc.step = step.name
                error = exc
                logger.info("%s attempt %d/%d: %s", step.name, attempt, retry.max_attempts, exc.message)
                display.attempt_failed(exc.kind, exc.message)
                if attempt >= retry.max_attempts:
                    break
                wait = sleeps[attempt - 1]
                if wait > 0:
                    display.retry_wait(wait)
                    self._sleep(wait)
                continue

            elapsed = time.monotonic() - started
            display.step_succeeded(step.name, attempt, elapsed)
            return StepResult(
                name=step.name,
                status=StepStatus.SUCCEEDED,
                attempts=attempt,
                elapsed=elapsed,
            )

        result = StepResult(
            name=step.name,
            status=StepStatus.FAILED,
            attempts=attempt,
            error=error.message,
            error_kind=error.kind,
            elapsed=time.monotonic() - started,
        )
        aborting = self._aborts(step)
        display.step_failed(step.name, error.kind, error.message, aborting)

        if aborting:
            raise AbortError(step.name, error, result)
        return result

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, steps: Sequence[Step], cancel: threading.Event | None = None) -> RunReport:
        """
        Run every step in declaration order and return the report.

        Always returns a report: abort and cancellation both fill the
        remainder with NOT_ATTEMPTED rather than raising.
        """
        _check_unique(steps)
        report = RunReport()
        total = len(steps)
        display.run_start(total)

        for index, step in enumerate(steps):
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                display.cancelled(step.name)
                self._fill_not_attempted(report, steps[index:])
                break

            try:
                report.results.append(self.run_step(step, index, total))
            except AbortError as exc:
                report.results.append(exc.result)
                report.aborted_by = step.name
                display.halt(exc.message)
                self._fill_not_attempted(report, steps[index + 1 :])
                break

        display.run_summary(report)
        return report

    @staticmethod
    def _fill_not_attempted(report: RunReport, remaining: Sequence[Step]) -> None:
        for step in remaining:
            report.results.append(StepResult(name=step.name, status=StepStatus.NOT_ATTEMPTED))


def run(steps: Sequence[Step], policy: RunPolicy | None = None, **kwargs) -> RunReport:
    """Convenience wrapper: ``StepRunner(policy).run(steps)``."""
    return StepRunner(policy).run(steps, **kwargs)
