"""
Unit tests for the degraded-mode guard: failure classification,
strict vs degraded handling, business errors passing through.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
import requests
from google.api_core import exceptions as gapi_exceptions
from google.auth import exceptions as google_auth_exceptions
from sqlalchemy.exc import OperationalError

from lensroom.errors import (
    CollaboratorUnavailableError,
    GenerationStateError,
    InsufficientCreditsError,
    MissingConfigError,
)
from lensroom.fallback import DegradedModeGuard, classify_error


def _http_error(status):
    response = MagicMock(status_code=status)
    return requests.HTTPError(f"{status} error", response=response)


class TestClassifyError:

    @pytest.mark.parametrize(
        "error",
        [
            MissingConfigError("GCS_BUCKET_NAME not configured"),
            google_auth_exceptions.DefaultCredentialsError("no ADC"),
        ],
    )
    def test_missing_config(self, error):
        assert classify_error(error) == "missing_config"

    @pytest.mark.parametrize(
        "error",
        [
            requests.ConnectionError("refused"),
            requests.Timeout("slow"),
            OperationalError("SELECT 1", {}, Exception("could not connect")),
            gapi_exceptions.ServiceUnavailable("gcs down"),
            ConnectionResetError("reset"),
        ],
    )
    def test_network(self, error):
        assert classify_error(error) == "network_error"

    @pytest.mark.parametrize(
        "error",
        [
            google_auth_exceptions.RefreshError("expired"),
            gapi_exceptions.Forbidden("nope"),
        ],
    )
    def test_auth(self, error):
        assert classify_error(error) == "auth_error"

    def test_http_status_mapping(self):
        assert classify_error(_http_error(401)) == "auth_error"
        assert classify_error(_http_error(403)) == "auth_error"
        assert classify_error(_http_error(503)) == "network_error"
        assert classify_error(_http_error(404)) == "other"

    def test_anything_else_is_other(self):
        assert classify_error(KeyError("x")) == "other"


class TestStrictMode:

    def test_success_passes_value(self):
        guard = DegradedModeGuard(degraded_mode=False)
        result = guard.call("ledger.get_balance", lambda: 7)
        assert result.value == 7
        assert not result.skipped
        assert not guard.degraded

    def test_unavailable_is_raised_as_503(self):
        guard = DegradedModeGuard(degraded_mode=False)

        def boom():
            raise requests.ConnectionError("ledger unreachable")

        with pytest.raises(CollaboratorUnavailableError) as err:
            guard.call("ledger.get_balance", boom)

        assert err.value.status_code == 503
        assert err.value.reason == "network_error"
        assert err.value.operation == "ledger.get_balance"
        assert isinstance(err.value.__cause__, requests.ConnectionError)
        assert guard.reasons == []


class TestDegradedMode:

    def test_unavailable_is_swallowed_and_recorded(self):
        guard = DegradedModeGuard(degraded_mode=True)

        def boom():
            raise MissingConfigError("DATABASE_URL missing")

        result = guard.call("generations.create", boom)
        assert result.skipped
        assert result.value is None
        assert result.reason == "generations.create: missing_config"
        assert guard.degraded
        assert guard.degraded_reason() == "generations.create: missing_config"

    def test_repeated_reasons_are_deduplicated(self):
        guard = DegradedModeGuard(degraded_mode=True)

        def boom():
            raise requests.ConnectionError("down")

        guard.call("storage.persist", boom)
        guard.call("storage.persist", boom)
        guard.call("ledger.adjust", boom)

        assert guard.degraded_reason() == "storage.persist: network_error; ledger.adjust: network_error"

    def test_async_variant_runs_in_thread(self):
        guard = DegradedModeGuard(degraded_mode=True)

        def boom():
            raise OperationalError("SELECT 1", {}, Exception("db down"))

        result = asyncio.run(guard.acall("ledger.get_balance", boom))
        assert result.reason == "ledger.get_balance: network_error"

    def test_decorator_form(self):
        guard = DegradedModeGuard(degraded_mode=True)

        @guard.guarded("storage.persist")
        def persist(url):
            raise requests.Timeout("slow bucket")

        assert persist("https://x").skipped


class TestBusinessErrorsPassThrough:

    @pytest.mark.parametrize("degraded", [True, False])
    def test_insufficient_credits_is_never_swallowed(self, degraded):
        guard = DegradedModeGuard(degraded_mode=degraded)

        def debit():
            raise InsufficientCreditsError(balance=5, required=8)

        with pytest.raises(InsufficientCreditsError):
            guard.call("ledger.adjust", debit)
        assert guard.reasons == []

    def test_state_violation_is_never_swallowed(self):
        guard = DegradedModeGuard(degraded_mode=True)

        def finalize():
            raise GenerationStateError("already success")

        with pytest.raises(GenerationStateError):
            guard.call("generations.mark_failed", finalize)
