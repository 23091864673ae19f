"""Tests for job handler registration and payload contracts."""

import pytest
from pydantic import BaseModel

from progress_workers.errors import InvalidJobPayloadError
from progress_workers.registry import (
    _registry,
    get_handler,
    register,
    registered_types,
    validate_payload,
)


@pytest.fixture(autouse=True)
def _clean_registry():
    """Remove test-registered job types after each test."""
    snapshot = dict(_registry)
    yield
    _registry.clear()
    _registry.update(snapshot)


class _EchoPayload(BaseModel):
    message: str
    repeat: int = 1


class TestRegister:
    def test_handler_lookup(self):
        @register("test-echo", payload_model=_EchoPayload)
        async def _handler(conn, payload):
            pass

        assert get_handler("test-echo") is _handler
        assert "test-echo" in registered_types()

    def test_unknown_type_has_no_handler(self):
        assert get_handler("test-missing") is None

    def test_duplicate_type_raises(self):
        @register("test-dup")
        async def _handler1(conn, payload):
            pass

        with pytest.raises(ValueError, match="Duplicate handler for job_type='test-dup'"):
            @register("test-dup")
            async def _handler2(conn, payload):
                pass

    def test_progress_calculation_registered(self):
        import progress_workers.handlers  # noqa: F401

        assert "progress-calculation" in registered_types()


class TestValidatePayload:
    def test_returns_model_instance(self):
        @register("test-echo", payload_model=_EchoPayload)
        async def _handler(conn, payload):
            pass

        job = validate_payload("test-echo", {"message": "hi", "repeat": "2"})
        assert job == _EchoPayload(message="hi", repeat=2)

    def test_invalid_payload_names_job_type(self):
        @register("test-echo", payload_model=_EchoPayload)
        async def _handler(conn, payload):
            pass

        with pytest.raises(InvalidJobPayloadError, match="Invalid test-echo payload") as exc_info:
            validate_payload("test-echo", {"repeat": 2})
        assert "message" in str(exc_info.value)

    def test_untyped_job_has_no_contract(self):
        @register("test-untyped")
        async def _handler(conn, payload):
            pass

        with pytest.raises(InvalidJobPayloadError, match="No payload contract"):
            validate_payload("test-untyped", {})
