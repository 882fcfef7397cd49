from unittest.mock import Mock

import pytest

from marketplace.utils import (
    AutomationError,
    PreconditionError,
    RetryPolicy,
    StorageError,
    handle_errors,
)


class TestRetryPolicy:
    def test_retries_until_success(self):
        func = Mock(side_effect=[StorageError("blip", stage="t"), StorageError("blip", stage="t"), "ok"])

        assert RetryPolicy(delay_seconds=0).call(func, 1, key="v") == "ok"
        assert func.call_count == 3
        func.assert_called_with(1, key="v")

    def test_raises_after_last_attempt(self):
        func = Mock(side_effect=StorageError("down", stage="t"))

        with pytest.raises(StorageError):
            RetryPolicy(max_attempts=2, delay_seconds=0).call(func)
        assert func.call_count == 2

    def test_other_errors_are_not_retried(self):
        func = Mock(side_effect=PreconditionError("not approved", stage="t"))

        with pytest.raises(PreconditionError):
            RetryPolicy(delay_seconds=0).call(func)
        assert func.call_count == 1

    def test_none_is_a_result_not_a_failure(self):
        func = Mock(return_value=None)

        assert RetryPolicy(delay_seconds=0).call(func) is None
        assert func.call_count == 1


class TestHandleErrors:
    def test_wraps_unexpected_exceptions(self):
        @handle_errors(stage="Lookup", error_class=StorageError)
        def lookup(project_id=None):
            raise KeyError(project_id)

        with pytest.raises(StorageError) as exc:
            lookup(project_id="p-1")
        assert exc.value.stage == "Lookup"
        assert exc.value.project_id == "p-1"
        assert isinstance(exc.value.original_exception, KeyError)

    def test_passes_marketplace_errors_through(self):
        @handle_errors(stage="Lookup", error_class=StorageError)
        def lookup():
            raise PreconditionError("nope", stage="inner")

        with pytest.raises(PreconditionError):
            lookup()


def test_automation_error_code_defaults_to_stage():
    assert AutomationError("boom", stage="save").code == "automation_failed:save"
    assert AutomationError("boom", stage="login", code="missing_gumroad_credentials").code == (
        "missing_gumroad_credentials"
    )
