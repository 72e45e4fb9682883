"""Registry of sync lifecycle hooks."""

import logging
import time
from typing import Dict, List, Optional

from shopify_sync.models import HookContext, HookPhase, HookResult, SyncHook

logger = logging.getLogger(__name__)

HOOK_LOGGER_PREFIX = "shopify_sync.hooks"


class HookRegistry:
    """Holds hooks ordered by priority and runs them per phase.

    Hooks run one after another. A failing hook is recorded in its
    ``HookResult`` and the next hook still runs.
    """

    def __init__(self):
        self._hooks: List[SyncHook] = []

    def register(self, hook: SyncHook) -> None:
        if any(h.id == hook.id for h in self._hooks):
            logger.warning(f"Replacing existing hook: {hook.id}")
            self._hooks = [h for h in self._hooks if h.id != hook.id]
        self._hooks.append(hook)
        # sort is stable, equal priorities keep registration order
        self._hooks.sort(key=lambda h: h.priority)

    def unregister(self, hook_id: str) -> bool:
        before = len(self._hooks)
        self._hooks = [h for h in self._hooks if h.id != hook_id]
        return len(self._hooks) < before

    def set_enabled(self, hook_id: str, enabled: bool) -> bool:
        hook = self.get_hook(hook_id)
        if hook is None:
            return False
        hook.enabled = enabled
        return True

    def get_hooks_for_phase(self, phase: HookPhase) -> List[SyncHook]:
        return [h for h in self._hooks if h.phase == phase and h.enabled]

    def get_all_hooks(self) -> List[SyncHook]:
        return list(self._hooks)

    def get_hook(self, hook_id: str) -> Optional[SyncHook]:
        return next((h for h in self._hooks if h.id == hook_id), None)

    def clear(self) -> None:
        self._hooks = []

    def _applies(self, hook: SyncHook, phase: HookPhase, context: HookContext) -> bool:
        if not hook.enabled or hook.phase != phase:
            return False
        if hook.only_for_mappings is not None and context.mapping_id not in hook.only_for_mappings:
            return False
        if hook.only_for_sync_types is not None and context.sync_type not in hook.only_for_sync_types:
            return False
        return True

    async def run(self, phase: HookPhase, context: HookContext) -> List[HookResult]:
        results: List[HookResult] = []

        for hook in [h for h in self._hooks if self._applies(h, phase, context)]:
            hook_logger = logging.getLogger(f"{HOOK_LOGGER_PREFIX}.{hook.name}")
            start = time.perf_counter()
            try:
                hook_logger.info("Starting...")
                await hook.handler(context.model_copy(update={"logger": hook_logger}))
                duration_ms = (time.perf_counter() - start) * 1000
                hook_logger.info(f"Completed in {duration_ms:.0f}ms")
                results.append(
                    HookResult(hook_id=hook.id, hook_name=hook.name, phase=phase, success=True, duration_ms=duration_ms)
                )
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                hook_logger.error(f"Failed after {duration_ms:.0f}ms: {e}", exc_info=True)
                results.append(
                    HookResult(
                        hook_id=hook.id,
                        hook_name=hook.name,
                        phase=phase,
                        success=False,
                        duration_ms=duration_ms,
                        error=str(e),
                    )
                )

        return results

    def summary(self) -> Dict[str, int]:
        """Enabled hook count per phase."""
        return {phase.value: len(self.get_hooks_for_phase(phase)) for phase in HookPhase}
