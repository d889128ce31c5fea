from clinicdesk.registry import CallRegistry
from conftest import TZ


class TestCallRegistry:
    def test_get_or_create_is_idempotent(self):
        registry = CallRegistry(tenant_id="clinic-1", timezone=TZ)
        first = registry.get_or_create("CA1", "+61412345678")
        second = registry.get_or_create("CA1", "")
        assert first is second
        assert first.tenant_id == "clinic-1"
        assert first.timezone == TZ
        assert len(registry) == 1

    def test_end_removes_and_marks_context(self):
        registry = CallRegistry()
        ctx = registry.get_or_create("CA1", "+61412345678")
        assert registry.end("CA1") is ctx
        assert ctx.ended
        assert "CA1" not in registry
        assert registry.end("CA1") is None

    def test_sweep_drops_idle_calls(self):
        registry = CallRegistry(timeout_seconds=60)
        idle = registry.get_or_create("CA1")
        active = registry.get_or_create("CA2")
        idle.last_activity = 1000.0
        active.last_activity = 1050.0

        dropped = registry.sweep(now=1070.0)

        assert dropped == [idle]
        assert idle.ended
        assert "CA2" in registry
        assert registry.get("CA1") is None
