# models.py
# Data contracts for the provisioning step runner.
# No business logic lives here — schema, validation and backoff arithmetic.

from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OnFailure(str, Enum):
    """What the runner does once a step has exhausted its attempts."""

    ABORT = "abort"
    CONTINUE = "continue"


class StepStatus(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class RetryPolicy(BaseModel):
    """
    How many times to try a step's action + postcondition, and how long to
    wait in between.

    With no explicit ``delays`` the wait before attempt n+1 is
    ``delay * backoff**(n-1)``, capped at ``max_delay``. An explicit
    ``delays`` sequence wins; its last value repeats when it runs short.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1)
    delay: float = Field(default=0.0, ge=0)
    backoff: float = Field(default=1.0, ge=1)
    max_delay: float | None = Field(default=None, ge=0)
    delays: tuple[float, ...] | None = None

    @field_validator("delays")
    @classmethod
    def _non_negative(cls, value: tuple[float, ...] | None) -> tuple[float, ...] | None:
        if value is not None:
            if not value:
                raise ValueError("delays must not be empty")
            if any(d < 0 for d in value):
                raise ValueError("delays must be non-negative")
        return value

    def sleeps(self) -> list[float]:
        """Durations to sleep between attempts (always max_attempts - 1 items)."""
        gaps = self.max_attempts - 1
        if self.delays is not None:
            return [self.delays[min(i, len(self.delays) - 1)] for i in range(gaps)]

        out: list[float] = []
        for i in range(gaps):
            value = self.delay * (self.backoff**i)
            if self.max_delay is not None:
                value = min(value, self.max_delay)
            out.append(value)
        return out


class RunPolicy(BaseModel):
    """Settings that apply to a whole run rather than one step."""

    model_config = ConfigDict(frozen=True)

    default_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    stop_on_failure: bool = Field(
        default=False, description="Treat every failed step as an abort."
    )


class Step(BaseModel):
    """A single unit of provisioning work."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str = Field(..., min_length=1, description="Unique identifier used in logs and reports.")
    description: str = Field(default="", description="Human-readable intent of this step.")
    precondition: Callable[[], Any] = Field(..., description="Truthy when the effect is already in place.")
    action: Callable[[], Any] = Field(..., description="Performs the work. Raise or return False to fail.")
    postcondition: Callable[[], Any] | None = Field(
        default=None, description="Verifies the effect. Defaults to the precondition."
    )
    retry: RetryPolicy | None = None
    on_failure: OnFailure = OnFailure.ABORT

    def verify(self) -> Any:
        check = self.postcondition if self.postcondition is not None else self.precondition
        return check()


class StepResult(BaseModel):
    """Outcome of one step within a run."""

    name: str
    status: StepStatus
    attempts: int = Field(default=0, description="Number of action invocations.")
    error: str | None = Field(default=None, description="Last error observed.")
    error_kind: str | None = Field(default=None, description="'action' or 'postcondition'.")
    elapsed: float = 0.0


class RunReport(BaseModel):
    """Ordered record of per-step outcomes for one execution of a step list."""

    results: list[StepResult] = Field(default_factory=list)
    aborted_by: str | None = None
    cancelled: bool = False

    @property
    def failed(self) -> list[StepResult]:
        return [r for r in self.results if r.status is StepStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def counts(self) -> dict[StepStatus, int]:
        tally = {status: 0 for status in StepStatus}
        for result in self.results:
            tally[result.status] += 1
        return tally

    def status_of(self, name: str) -> StepStatus:
        for result in self.results:
            if result.name == name:
                return result.status
        raise KeyError(name)
