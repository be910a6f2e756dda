"""
Tests for the error taxonomy, ErrorHandler and the background sweep job.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from fiatgate.core.errors import (
    ConflictError,
    ErrorHandler,
    ExhaustedRetries,
    NotFoundError,
    ServiceUnavailable,
    SettlementGateError,
    UnauthorizedError,
    ValidationError,
)
from fiatgate.core.scheduler import SWEEP_JOB_ID, run_settlement_sweep, start_scheduler


class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "error_cls, code, status_code",
        [
            (ValidationError, "validation_error", 422),
            (ConflictError, "conflict", 409),
            (ExhaustedRetries, "exhausted_retries", 500),
            (NotFoundError, "not_found", 404),
            (UnauthorizedError, "unauthorized", 401),
        ],
    )
    def test_codes(self, error_cls, code, status_code):
        error = error_cls("something went wrong", metadata={"settlement_id": 3})

        assert isinstance(error, SettlementGateError)
        assert error.status_code == status_code
        assert error.to_dict() == {
            "code": code,
            "message": "something went wrong",
            "metadata": {"settlement_id": 3},
        }

    def test_service_unavailable_names_service(self):
        error = ServiceUnavailable("release", metadata={"retry_after": 30})

        assert error.code == "service_unavailable"
        assert error.status_code == 503
        assert error.service_name == "release"
        assert error.metadata == {"service": "release", "retry_after": 30}
        assert "release" in error.message

    def test_metadata_defaults_to_empty(self):
        assert ConflictError("dup").metadata == {}


class TestErrorHandler:
    def test_suppresses_and_captures(self):
        with patch("fiatgate.core.errors.capture_exception", return_value="evt-1") as captured:
            with ErrorHandler("settlement_sweep", context={"batch": 50}) as handler:
                raise RuntimeError("db down")

        assert handler.event_id == "evt-1"
        kwargs = captured.call_args.kwargs
        assert kwargs["context"] == {"operation": "settlement_sweep", "batch": 50}
        assert kwargs["fingerprint"] == ["settlement_sweep", "RuntimeError"]

    def test_reraise(self):
        with patch("fiatgate.core.errors.capture_exception"):
            with pytest.raises(RuntimeError):
                with ErrorHandler("release", reraise=True):
                    raise RuntimeError("boom")

    def test_no_error_no_capture(self):
        with patch("fiatgate.core.errors.capture_exception") as captured:
            with ErrorHandler("noop"):
                pass
        captured.assert_not_called()


class TestSweepJob:
    def test_job_failure_does_not_propagate(self):
        container = MagicMock()
        container.scheduler.run_sweep.side_effect = RuntimeError("db down")

        with patch("fiatgate.core.errors.capture_exception") as captured:
            run_settlement_sweep(container)

        captured.assert_called_once()

    def test_job_runs_sweep(self, container, store, release, make_payment):
        record = store.create(make_payment())

        run_settlement_sweep(container)

        assert release.calls == [record.id]

    def test_scheduler_registers_single_instance_job(self, container):
        async def start():
            scheduler = start_scheduler(container)
            try:
                return scheduler.get_job(SWEEP_JOB_ID)
            finally:
                scheduler.shutdown(wait=False)

        job = asyncio.run(start())

        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.trigger.interval.total_seconds() == container.settings.SETTLEMENT_SWEEP_INTERVAL_MINUTES * 60
