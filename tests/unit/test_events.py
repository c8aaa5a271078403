"""Unit tests for decision events."""

from mesh_operator.observability.events import EventRecorder, get_event_recorder


class TestEventRecorder:
    """Test the bounded event buffer."""

    def test_emit_returns_event_with_fields(self):
        recorder = EventRecorder()

        event = recorder.emit("router", "route", "redirect", "plain http", host="shop.example.com")

        data = event.to_dict()
        assert data["component"] == "router"
        assert data["outcome"] == "redirect"
        assert data["host"] == "shop.example.com"
        assert "timestamp" in data

    def test_recent_filters_by_component_and_action(self):
        recorder = EventRecorder()
        recorder.emit("reconciler", "apply", "created", "new unit")
        recorder.emit("reconciler", "prune", "deleted", "undeclared")
        recorder.emit("policy", "authorize", "denied", "no rule")

        assert [e.action for e in recorder.recent(component="reconciler")] == ["apply", "prune"]
        assert [e.outcome for e in recorder.recent(action="authorize")] == ["denied"]
        assert len(recorder.recent()) == 3

    def test_buffer_is_bounded(self):
        recorder = EventRecorder(max_events=2)
        for outcome in ("a", "b", "c"):
            recorder.emit("admission", "admit", outcome, "test")

        assert [e.outcome for e in recorder.recent()] == ["b", "c"]

        recorder.clear()
        assert recorder.recent() == []

    def test_process_wide_recorder_is_shared(self):
        assert get_event_recorder() is get_event_recorder()
