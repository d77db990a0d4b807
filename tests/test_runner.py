import threading

import pytest
from unittest.mock import MagicMock

from hostprep.models import OnFailure, RetryPolicy, RunPolicy, Step, StepStatus
from hostprep.runner import (
    AbortError,
    ActionError,
    PostconditionError,
    StepRunner,
    run,
)


def make_step(name, satisfied=False, action=None, postcondition=None, **kwargs):
    return Step(
        name=name,
        precondition=satisfied if callable(satisfied) else (lambda: satisfied),
        action=action or MagicMock(return_value=None),
        postcondition=postcondition or (lambda: True),
        **kwargs,
    )


def flaky(failures: int):
    """Action that raises ``failures`` times, then succeeds."""
    calls = {"n": 0}

    def action():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise RuntimeError(f"boom {calls['n']}")

    action.calls = calls
    return action


def statuses(report):
    return [r.status for r in report.results]


@pytest.fixture
def runner():
    return StepRunner(sleep=MagicMock())


# ---------------------------------------------------------------------------
# Idempotence and convergence
# ---------------------------------------------------------------------------


def test_all_satisfied_runs_no_actions(runner):
    actions = [MagicMock() for _ in range(4)]
    steps = [make_step(f"s{i}", satisfied=True, action=a) for i, a in enumerate(actions)]

    report = runner.run(steps)

    assert statuses(report) == [StepStatus.SKIPPED] * 4
    for action in actions:
        action.assert_not_called()
    assert report.ok


def test_rerun_after_success_is_all_skipped(runner):
    state = {"a": False, "b": False}

    def mark(key):
        def action():
            state[key] = True
        return action

    steps = [
        Step(name=key, precondition=lambda k=key: state[k], action=mark(key))
        for key in state
    ]

    first = runner.run(steps)
    second = runner.run(steps)

    assert statuses(first) == [StepStatus.SUCCEEDED] * 2
    assert statuses(second) == [StepStatus.SKIPPED] * 2


def test_postcondition_defaults_to_precondition(runner):
    done = {"value": False}

    def action():
        done["value"] = True

    step = Step(name="touch", precondition=lambda: done["value"], action=action)
    report = runner.run([step])

    assert report.status_of("touch") is StepStatus.SUCCEEDED


# ---------------------------------------------------------------------------
# Failure policies
# ---------------------------------------------------------------------------


def test_abort_marks_remaining_not_attempted(runner):
    later = MagicMock()
    steps = [
        make_step("first"),
        make_step("second", satisfied=True),
        make_step("breaks", action=MagicMock(side_effect=RuntimeError("no")),
                  retry=RetryPolicy(max_attempts=2)),
        make_step("after", action=later),
        make_step("also-after", satisfied=True),
    ]

    report = runner.run(steps)

    assert statuses(report) == [
        StepStatus.SUCCEEDED,
        StepStatus.SKIPPED,
        StepStatus.FAILED,
        StepStatus.NOT_ATTEMPTED,
        StepStatus.NOT_ATTEMPTED,
    ]
    assert report.aborted_by == "breaks"
    later.assert_not_called()
    assert not report.ok


def test_continue_lets_later_steps_run(runner):
    later = MagicMock()
    steps = [
        make_step("optional", action=MagicMock(side_effect=RuntimeError("no")),
                  on_failure=OnFailure.CONTINUE, retry=RetryPolicy(max_attempts=3)),
        make_step("next", action=later),
    ]

    report = runner.run(steps)

    assert statuses(report) == [StepStatus.FAILED, StepStatus.SUCCEEDED]
    assert report.results[0].attempts == 3
    assert report.aborted_by is None
    later.assert_called_once()


def test_stop_on_failure_overrides_continue():
    runner = StepRunner(RunPolicy(stop_on_failure=True), sleep=MagicMock())
    steps = [
        make_step("optional", action=MagicMock(return_value=False), on_failure=OnFailure.CONTINUE),
        make_step("next"),
    ]

    report = runner.run(steps)

    assert statuses(report) == [StepStatus.FAILED, StepStatus.NOT_ATTEMPTED]


def test_run_step_raises_abort_error_with_result(runner):
    step = make_step("bad", action=MagicMock(side_effect=ActionError("", "exit 1")))

    with pytest.raises(AbortError) as info:
        runner.run_step(step)

    assert info.value.result.status is StepStatus.FAILED
    assert isinstance(info.value.cause, ActionError)
    assert info.value.cause.step == "bad"


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


def test_fails_twice_then_succeeds_on_third_attempt(runner):
    action = flaky(2)
    step = make_step("flaky", action=action, retry=RetryPolicy(max_attempts=3))

    report = runner.run([step])

    assert report.status_of("flaky") is StepStatus.SUCCEEDED
    assert report.results[0].attempts == 3
    assert action.calls["n"] == 3


def test_sleeps_follow_backoff_between_attempts():
    sleep = MagicMock()
    runner = StepRunner(sleep=sleep)
    step = make_step(
        "poll",
        action=MagicMock(return_value=False),
        retry=RetryPolicy(max_attempts=4, delay=1.0, backoff=2.0),
        on_failure=OnFailure.CONTINUE,
    )

    runner.run([step])

    assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0]


def test_default_retry_comes_from_run_policy():
    runner = StepRunner(RunPolicy(default_retry=RetryPolicy(max_attempts=2)), sleep=MagicMock())
    action = MagicMock(side_effect=RuntimeError("no"))

    report = runner.run([make_step("x", action=action, on_failure=OnFailure.CONTINUE)])

    assert action.call_count == 2
    assert report.results[0].attempts == 2


def test_postcondition_failure_is_not_masked(runner):
    action = MagicMock(return_value=True)
    step = make_step("lies", action=action, postcondition=lambda: False,
                     retry=RetryPolicy(max_attempts=3))

    report = runner.run([step])

    result = report.results[0]
    assert result.status is StepStatus.FAILED
    assert result.error_kind == PostconditionError.kind
    assert action.call_count == 3


def test_exhausted_retries_report_the_final_error():
    sleep = MagicMock()
    runner = StepRunner(sleep=sleep)
    step = make_step("flaky", action=flaky(failures=5), on_failure=OnFailure.CONTINUE,
                     retry=RetryPolicy(max_attempts=3, delay=1.0))

    result = runner.run_step(step)

    assert result.status is StepStatus.FAILED
    assert result.attempts == 3
    assert result.error == "RuntimeError: boom 3"
    assert sleep.call_count == 2


def test_action_returning_false_is_a_failure(runner):
    report = runner.run([make_step("no", action=MagicMock(return_value=False))])

    assert report.results[0].error_kind == "action"
    assert report.results[0].error == "action reported failure"


def test_postcondition_raising_counts_as_postcondition_failure(runner):
    def broken():
        raise OSError("gone")

    report = runner.run([make_step("x", postcondition=broken)])

    assert report.results[0].error_kind == "postcondition"
    assert "OSError: gone" in report.results[0].error


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


def test_precondition_raising_means_needs_action(runner):
    def explode():
        raise PermissionError("denied")

    action = MagicMock()
    report = runner.run([make_step("p", satisfied=explode, action=action)])

    action.assert_called_once()
    assert report.status_of("p") is StepStatus.SUCCEEDED


def test_precondition_is_not_retried():
    precondition = MagicMock(return_value=False)
    step = Step(
        name="p",
        precondition=precondition,
        action=MagicMock(side_effect=RuntimeError("no")),
        postcondition=lambda: True,
        retry=RetryPolicy(max_attempts=3),
        on_failure=OnFailure.CONTINUE,
    )

    StepRunner(sleep=MagicMock()).run([step])

    precondition.assert_called_once()


# ---------------------------------------------------------------------------
# Cancellation and validation
# ---------------------------------------------------------------------------


def test_cancel_between_steps():
    cancel = threading.Event()

    def first_action():
        cancel.set()

    steps = [make_step("one", action=first_action), make_step("two"), make_step("three")]
    report = StepRunner(sleep=MagicMock()).run(steps, cancel=cancel)

    assert statuses(report) == [
        StepStatus.SUCCEEDED,
        StepStatus.NOT_ATTEMPTED,
        StepStatus.NOT_ATTEMPTED,
    ]
    assert report.cancelled
    assert report.ok


def test_duplicate_names_rejected(runner):
    with pytest.raises(ValueError, match="Duplicate step name"):
        runner.run([make_step("same"), make_step("same")])


def test_empty_step_list(runner):
    report = runner.run([])
    assert report.results == []
    assert report.ok


# ---------------------------------------------------------------------------
# Error text reaches the console verbatim
# ---------------------------------------------------------------------------


def test_bracketed_action_error_does_not_break_the_run(runner):
    def locked():
        raise OSError("cannot write [/var/lib/dpkg/lock]")

    steps = [
        make_step("packages", action=locked, on_failure=OnFailure.CONTINUE, retry=RetryPolicy(max_attempts=2)),
        make_step("after", satisfied=True),
    ]

    report = runner.run(steps)

    assert statuses(report) == [StepStatus.FAILED, StepStatus.SKIPPED]
    assert "[/var/lib/dpkg/lock]" in report.results[0].error


def test_bracketed_abort_error_still_returns_report(runner):
    def locked():
        raise OSError("held by [/bold]")

    steps = [
        make_step("[red]first", action=locked, retry=RetryPolicy(max_attempts=1)),
        make_step("second"),
    ]

    report = runner.run(steps)

    assert statuses(report) == [StepStatus.FAILED, StepStatus.NOT_ATTEMPTED]
    assert report.aborted_by == "[red]first"


def test_bracketed_precondition_error_means_needs_action(runner):
    def broken():
        raise RuntimeError("bad path [/etc/x]")

    action = MagicMock(return_value=None)
    report = runner.run([make_step("check", satisfied=broken, action=action)])

    assert statuses(report) == [StepStatus.SUCCEEDED]
    action.assert_called_once()


# ---------------------------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------------------------


def test_mixed_scenario():
    c_action = MagicMock(side_effect=RuntimeError("network down"))
    steps = [
        make_step("A", on_failure=OnFailure.ABORT),
        make_step("B", satisfied=True),
        make_step("C", action=c_action, on_failure=OnFailure.CONTINUE,
                  retry=RetryPolicy(max_attempts=2)),
        make_step("D"),
    ]

    report = run(steps)

    assert [(r.name, r.status) for r in report.results] == [
        ("A", StepStatus.SUCCEEDED),
        ("B", StepStatus.SKIPPED),
        ("C", StepStatus.FAILED),
        ("D", StepStatus.SUCCEEDED),
    ]
    assert c_action.call_count == 2
    assert report.results[2].error == "RuntimeError: network down"
    assert [r.name for r in report.failed] == ["C"]
