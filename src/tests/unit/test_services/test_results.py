"""Tests for service results and error translation."""

import pytest

from mcp_config_manager.domain.exceptions import (
    AlreadyRunningError,
    InvalidValueError,
    RetryExhaustedError,
    ValidationFailedError,
)
from mcp_config_manager.management.process_manager import (
    ProcessError,
    ProcessStartError,
    ProcessStopError,
)
from mcp_config_manager.services.results import (
    ErrorCode,
    ServiceResult,
    ServiceResultError,
    error_from_exception,
)
from mcp_config_manager.storage.base import (
    NotFoundError,
    RepositoryTimeoutError,
    VersionConflictError,
)
from mcp_config_manager.sync.host_config import ConfigIOError


class TestServiceResult:
    def test_unwrap_success(self):
        assert ServiceResult.success(5).unwrap() == 5

    def test_unwrap_failure_raises(self):
        error = error_from_exception(NotFoundError("abc"), "get_server", "abc")
        with pytest.raises(ServiceResultError) as exc_info:
            ServiceResult.failure(error).unwrap()
        assert exc_info.value.error.code is ErrorCode.NOT_FOUND


class TestErrorTranslation:
    """Test mapping of lower-layer exceptions onto error codes."""

    @pytest.mark.parametrize(
        "exc,code",
        [
            (ValidationFailedError(["a", "b"]), ErrorCode.VALIDATION_ERROR),
            (InvalidValueError("name", "too short"), ErrorCode.VALIDATION_ERROR),
            (AlreadyRunningError(), ErrorCode.ALREADY_RUNNING),
            (RetryExhaustedError(4, 3), ErrorCode.RETRY_EXHAUSTED),
            (NotFoundError("abc"), ErrorCode.NOT_FOUND),
            (VersionConflictError("abc", 1, 2), ErrorCode.CONCURRENT_MODIFICATION),
            (RepositoryTimeoutError("find", 10), ErrorCode.REPOSITORY_ERROR),
            (ProcessStartError("spawn failed"), ErrorCode.START_ERROR),
            (ProcessError("unknown"), ErrorCode.START_ERROR),
            (ProcessStopError("stuck"), ErrorCode.STOP_ERROR),
            (ConfigIOError("unreadable"), ErrorCode.CONFIG_IO_ERROR),
        ],
    )
    def test_codes(self, exc, code):
        error = error_from_exception(exc, "op", "server-1")
        assert error.code is code
        assert error.details["operation"] == "op"
        assert error.details["server_id"] == "server-1"
        assert error.cause is exc

    def test_validation_errors_listed(self):
        error = error_from_exception(ValidationFailedError(["a", "b"]), "create_server")
        assert error.details["errors"] == ["a", "b"]
        assert error.to_dict()["code"] == "VALIDATION_ERROR"

    def test_unmapped_exception_is_a_bug(self):
        with pytest.raises(TypeError):
            error_from_exception(RuntimeError("?"), "op")
