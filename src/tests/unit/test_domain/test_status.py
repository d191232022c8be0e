"""Tests for the server status machine."""

import pytest

from mcp_config_manager.domain.exceptions import (
    AlreadyRunningError,
    InvalidTransitionError,
    NotRunningError,
    RetryExhaustedError,
)
from mcp_config_manager.domain.status import (
    ErrorInfo,
    ErrorStatus,
    IdleStatus,
    RunningStatus,
    StatusKind,
    StoppedStatus,
    UpdatingStatus,
    begin_update,
    calculate_uptime_ms,
    complete_update,
    ensure_can_start,
    ensure_transition,
    is_legal_transition,
    process_exited,
    start_failed,
    start_succeeded,
    status_from_dict,
    status_text,
    status_to_dict,
    stop_succeeded,
)


def _error(message="boom"):
    return ErrorInfo(code="START_ERROR", message=message)


class TestStartTransitions:
    """Test transitions out of startable states."""

    @pytest.mark.parametrize("status", [IdleStatus(), StoppedStatus(), ErrorStatus(_error())])
    def test_start_succeeded_from_startable(self, status):
        running = start_succeeded(status, pid=123)
        assert running.kind is StatusKind.RUNNING
        assert running.pid == 123

    def test_start_from_running_raises_already_running(self):
        with pytest.raises(AlreadyRunningError):
            start_succeeded(RunningStatus(pid=1))

    def test_start_from_updating_is_invalid(self):
        with pytest.raises(InvalidTransitionError):
            ensure_can_start(UpdatingStatus(resume=IdleStatus()))

    def test_start_failed_counts_retries(self):
        first = start_failed(IdleStatus(), _error())
        assert first.retry_count == 1
        second = start_failed(first, _error())
        assert second.retry_count == 2

    def test_retry_exhausted_only_above_limit(self):
        ensure_can_start(ErrorStatus(_error(), retry_count=2), retry_limit=2)
        with pytest.raises(RetryExhaustedError) as exc_info:
            ensure_can_start(ErrorStatus(_error(), retry_count=3), retry_limit=2)
        assert exc_info.value.details["retry_limit"] == 2

    def test_no_retry_limit_never_exhausts(self):
        ensure_can_start(ErrorStatus(_error(), retry_count=100))


class TestStopAndExit:
    def test_stop_records_reason(self):
        stopped = stop_succeeded(RunningStatus(pid=1), reason="manual")
        assert stopped.reason == "manual"

    @pytest.mark.parametrize("status", [IdleStatus(), StoppedStatus(), ErrorStatus(_error())])
    def test_stop_requires_running(self, status):
        with pytest.raises(NotRunningError):
            stop_succeeded(status)

    def test_process_exit_resets_retry_count(self):
        status = process_exited(RunningStatus(pid=1), _error("exited"))
        assert status.kind is StatusKind.ERROR
        assert status.retry_count == 0


class TestUpdating:
    def test_begin_and_complete_restore_prior(self):
        prior = StoppedStatus(reason="manual")
        updating = begin_update(prior)
        assert updating.resume == prior

        restored = complete_update(updating)
        assert isinstance(restored, StoppedStatus)
        assert restored.reason == "manual"

    def test_complete_without_prior_goes_idle(self):
        assert isinstance(complete_update(UpdatingStatus()), IdleStatus)

    def test_nested_update_keeps_original_resume(self):
        prior = RunningStatus(pid=5)
        nested = begin_update(begin_update(prior), progress=50)
        assert nested.resume == prior
        assert nested.progress == 50

    def test_complete_requires_updating(self):
        with pytest.raises(InvalidTransitionError):
            complete_update(IdleStatus())

    def test_progress_bounds(self):
        with pytest.raises(ValueError):
            UpdatingStatus(progress=101)


class TestTransitionTable:
    @pytest.mark.parametrize(
        "old,new,legal",
        [
            (IdleStatus(), RunningStatus(), True),
            (IdleStatus(), StoppedStatus(), False),
            (RunningStatus(), StoppedStatus(), True),
            (RunningStatus(), IdleStatus(), False),
            (StoppedStatus(), ErrorStatus(_error()), True),
            (ErrorStatus(_error()), RunningStatus(), True),
            (UpdatingStatus(resume=StoppedStatus()), StoppedStatus(), True),
            (UpdatingStatus(resume=StoppedStatus()), RunningStatus(), False),
            (RunningStatus(), UpdatingStatus(), True),
        ],
    )
    def test_is_legal_transition(self, old, new, legal):
        assert is_legal_transition(old, new) is legal

    def test_ensure_transition_running_to_running(self):
        with pytest.raises(AlreadyRunningError):
            ensure_transition(RunningStatus(), RunningStatus())


class TestStatusPresentation:
    def test_status_text(self):
        assert status_text(IdleStatus()) == "Idle"
        assert status_text(RunningStatus(pid=42)) == "Running (PID: 42)"
        assert status_text(StoppedStatus(reason="manual")) == "Stopped (manual)"
        assert status_text(ErrorStatus(_error("bad"))) == "Error: bad"
        assert status_text(UpdatingStatus(progress=30)) == "Updating (30%)"

    def test_uptime_only_for_running(self):
        assert calculate_uptime_ms(StoppedStatus()) == 0
        running = RunningStatus()
        assert calculate_uptime_ms(running, now=running.since) == 0

    def test_dict_round_trip_keeps_payload(self):
        status = UpdatingStatus(progress=10, resume=ErrorStatus(_error("x"), retry_count=2))
        restored = status_from_dict(status_to_dict(status))
        assert restored.progress == 10
        assert restored.resume.retry_count == 2
        assert restored.resume.error.message == "x"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            status_from_dict({"kind": "sleeping"})
