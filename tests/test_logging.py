import pytest

from enviacodigo.core.logging import mask_destination, set_trace_id, trace_id_ctx


@pytest.mark.parametrize("value, masked", [
    ("+5511999999999", "***9999"),
    ("cliente@example.com", "c***@example.com"),
    ("123", "***"),
    (None, "-"),
])
def test_mask_destination(value, masked):
    assert mask_destination(value) == masked


def test_trace_id():
    assert set_trace_id("abc") == "abc"
    assert trace_id_ctx.get() == "abc"
    assert len(set_trace_id()) == 32
