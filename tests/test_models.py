import pytest
from pydantic import ValidationError

from hostprep.models import RetryPolicy, RunReport, Step, StepResult, StepStatus

# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


def test_single_attempt_never_sleeps():
    assert RetryPolicy().sleeps() == []


def test_constant_delay():
    assert RetryPolicy(max_attempts=3, delay=2.5).sleeps() == [2.5, 2.5]


def test_exponential_backoff_is_capped():
    policy = RetryPolicy(max_attempts=6, delay=1.0, backoff=3.0, max_delay=10.0)
    assert policy.sleeps() == [1.0, 3.0, 9.0, 10.0, 10.0]


def test_explicit_delays_repeat_last_value():
    policy = RetryPolicy(max_attempts=5, delays=[0.5, 2.0])
    assert policy.sleeps() == [0.5, 2.0, 2.0, 2.0]


def test_explicit_delays_override_backoff():
    policy = RetryPolicy(max_attempts=3, delay=100.0, backoff=2.0, delays=[1.0])
    assert policy.sleeps() == [1.0, 1.0]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"delay": -1},
        {"backoff": 0.5},
        {"delays": []},
        {"delays": [1.0, -2.0]},
    ],
)
def test_invalid_policies_rejected(kwargs):
    with pytest.raises(ValidationError):
        RetryPolicy(**kwargs)


# ---------------------------------------------------------------------------
# Step
# ---------------------------------------------------------------------------


def test_step_requires_a_name():
    with pytest.raises(ValidationError):
        Step(name="", precondition=lambda: True, action=lambda: None)


def test_step_rejects_non_callable_action():
    with pytest.raises(ValidationError):
        Step(name="x", precondition=lambda: True, action="apt-get install")


def test_verify_uses_postcondition_when_given():
    step = Step(name="x", precondition=lambda: False, action=lambda: None, postcondition=lambda: True)
    assert step.verify() is True


# ---------------------------------------------------------------------------
# RunReport
# ---------------------------------------------------------------------------


def test_report_counts_and_lookup():
    report = RunReport(
        results=[
            StepResult(name="a", status=StepStatus.SKIPPED),
            StepResult(name="b", status=StepStatus.FAILED, attempts=2, error="x"),
            StepResult(name="c", status=StepStatus.NOT_ATTEMPTED),
        ]
    )

    assert report.counts[StepStatus.SKIPPED] == 1
    assert report.counts[StepStatus.SUCCEEDED] == 0
    assert [r.name for r in report.failed] == ["b"]
    assert not report.ok
    assert report.status_of("c") is StepStatus.NOT_ATTEMPTED
    with pytest.raises(KeyError):
        report.status_of("missing")
