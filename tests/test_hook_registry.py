"""Tests for sync lifecycle hooks."""

import pytest

from shopify_sync.models import HookContext, HookPhase, SyncHook, SyncType
from shopify_sync.services.hook_registry import HookRegistry


def make_hook(hook_id, handler, phase=HookPhase.PRE_SYNC, priority=100, **kwargs):
    return SyncHook(id=hook_id, name=hook_id, phase=phase, priority=priority, handler=handler, **kwargs)


@pytest.fixture
def context(sku_mapping):
    return HookContext(
        mapping_id=sku_mapping.id,
        mapping_config=sku_mapping,
        sync_type=SyncType.FULL,
        run_id="run-1",
    )


class TestHookRegistry:
    """Test hook ordering, filtering and failure isolation."""

    @pytest.mark.asyncio
    async def test_priority_order(self, context):
        calls = []

        def recorder(name):
            async def handler(ctx):
                calls.append(name)
            return handler

        registry = HookRegistry()
        registry.register(make_hook("late", recorder("late"), priority=200))
        registry.register(make_hook("first", recorder("first"), priority=10))
        registry.register(make_hook("second", recorder("second"), priority=10))

        await registry.run(HookPhase.PRE_SYNC, context)
        assert calls == ["first", "second", "late"]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_hooks(self, context):
        calls = []

        async def broken(ctx):
            raise RuntimeError("backup target unreachable")

        async def after(ctx):
            calls.append(ctx.logger.name)

        registry = HookRegistry()
        registry.register(make_hook("backup", broken, priority=1))
        registry.register(make_hook("notify", after, priority=2))

        results = await registry.run(HookPhase.PRE_SYNC, context)

        assert [r.success for r in results] == [False, True]
        assert results[0].error == "backup target unreachable"
        assert calls == ["shopify_sync.hooks.notify"]

    @pytest.mark.asyncio
    async def test_mapping_and_type_filters(self, context):
        async def noop(ctx):
            pass

        registry = HookRegistry()
        registry.register(make_hook("other-mapping", noop, only_for_mappings=["mapping-2"]))
        registry.register(make_hook("incremental-only", noop, only_for_sync_types=[SyncType.INCREMENTAL]))
        registry.register(make_hook("post", noop, phase=HookPhase.POST_SYNC))
        registry.register(make_hook("match", noop, only_for_mappings=["mapping-1"]))

        results = await registry.run(HookPhase.PRE_SYNC, context)
        assert [r.hook_id for r in results] == ["match"]

    @pytest.mark.asyncio
    async def test_disabled_hooks_skipped(self, context):
        async def noop(ctx):
            pass

        registry = HookRegistry()
        registry.register(make_hook("a", noop))
        assert registry.set_enabled("a", False) is True
        assert await registry.run(HookPhase.PRE_SYNC, context) == []
        assert registry.set_enabled("missing", False) is False

    def test_register_replaces_same_id(self):
        async def noop(ctx):
            pass

        registry = HookRegistry()
        registry.register(make_hook("a", noop, priority=5))
        registry.register(make_hook("a", noop, priority=50))

        assert len(registry.get_all_hooks()) == 1
        assert registry.get_hook("a").priority == 50
        assert registry.unregister("a") is True
        assert registry.unregister("a") is False

    def test_summary(self):
        async def noop(ctx):
            pass

        registry = HookRegistry()
        registry.register(make_hook("a", noop))
        registry.register(make_hook("b", noop, phase=HookPhase.POST_SYNC))
        summary = registry.summary()
        assert summary["pre-sync"] == 1
        assert summary["post-sync"] == 1
        assert summary["post-write"] == 0
