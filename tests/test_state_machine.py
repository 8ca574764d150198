import pytest

from visionm.jobs import state_machine
from visionm.jobs.errors import InvalidTransitionError
from visionm.jobs.models import Job, JobKind, JobProgress, JobStatus, StatusReport


def job(status, percent=0.0):
    return Job(job_id="J1", kind=JobKind.INFERENCE, status=status, progress=JobProgress(percent=percent))


def test_queued_may_skip_to_completed():
    updated = state_machine.apply_report(job(JobStatus.QUEUED), StatusReport(status=JobStatus.COMPLETED))
    assert updated.status == JobStatus.COMPLETED
    assert updated.progress.percent == 100
    assert updated.completed_at is not None


def test_running_never_moves_back_to_queued():
    current = job(JobStatus.RUNNING, 30)
    updated = state_machine.apply_report(current, StatusReport(status=JobStatus.QUEUED))
    assert updated is current


@pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
def test_terminal_states_are_sticky(terminal):
    current = job(terminal)
    for status in JobStatus:
        assert state_machine.apply_report(current, StatusReport(status=status)).status == terminal


def test_progress_is_monotonic_while_running():
    current = job(JobStatus.RUNNING, 60)
    report = StatusReport(status=JobStatus.RUNNING, progress=JobProgress(processed=2, total=10, percent=20))
    updated = state_machine.apply_report(current, report)
    assert updated.progress.percent == 60
    assert updated.progress.total == 10


def test_completed_keeps_final_metrics():
    report = StatusReport(status=JobStatus.COMPLETED, metrics={"mAP50": 0.8})
    assert state_machine.apply_report(job(JobStatus.RUNNING), report).metrics == {"mAP50": 0.8}


def test_guards():
    assert state_machine.can_start(JobStatus.IDLE)
    assert not state_machine.can_start(JobStatus.COMPLETED)
    assert state_machine.can_cancel(JobStatus.QUEUED)
    assert not state_machine.can_cancel(JobStatus.FAILED)
    assert state_machine.can_retry(JobStatus.CANCELLED)
    assert state_machine.can_delete(JobStatus.COMPLETED)
    assert not state_machine.can_delete(JobStatus.RUNNING)

    with pytest.raises(InvalidTransitionError, match="Cannot cancel a job that is completed"):
        state_machine.ensure(False, "cancel", JobStatus.COMPLETED)
