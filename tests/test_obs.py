"""Tests for the tracing helpers when Langfuse is not configured."""

from docqa import obs


def test_trace_is_noop_without_langfuse(monkeypatch):
    monkeypatch.setattr(obs, "_langfuse_client", None)
    monkeypatch.setattr(obs.settings, "LANGFUSE_HOST", "")
    trace = obs.Trace("answer", input={"q": "x"})
    assert not trace.enabled
    trace.event("route", {"route": "standard"})
    trace.generation("answer", "prompt", "output")
    trace.end({"ok": True})


def test_span_stringifies_attributes():
    with obs.span("retrieve", {"tenant": "acme", "top_k": 5, "filters": {"a": 1}, "skip": None}) as s:
        assert s is not None
