import pytest

from telemetry import init_telemetry, trace_span


@trace_span("test.add", static_attrs={"component": "test"}, attr_from_args=lambda a, b: {"a": a, "b": None})
def add(a, b):
    return a + b


@trace_span()
async def fail_async(message):
    raise ValueError(message)


def test_sync_function_returns_through_span():
    assert add(2, 3) == 5
    assert add.__name__ == "add"


@pytest.mark.asyncio
async def test_async_exceptions_are_reraised():
    with pytest.raises(ValueError, match="boom"):
        await fail_async("boom")


def test_init_is_a_no_op_when_disabled(monkeypatch):
    import telemetry

    monkeypatch.setenv("DISABLE_TELEMETRY", "true")
    init_telemetry("feed-sync-test")
    assert telemetry._provider is None
