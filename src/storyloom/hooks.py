"""Plugin hook pipeline.

A plugin is any object that defines some of:

    before_context(state) -> state
    before_generation(messages) -> messages
    after_generation(result) -> result
    after_save(fragment, story_id) -> None

Each may be a plain or async method. Hooks run in registration order and
each plugin's output feeds the next; plugins without a hook are skipped.
"""

import inspect
import time

import structlog

logger = structlog.get_logger(__name__)


def _plugin_name(plugin) -> str:
    return getattr(plugin, "name", None) or type(plugin).__name__


async def _call(hook, *args):
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class PluginPipeline:
    def __init__(self, plugins=()):
        self.plugins = tuple(plugins)

    async def _reduce(self, stage: str, value):
        hooked = [p for p in self.plugins if callable(getattr(p, stage, None))]
        if hooked:
            logger.debug("Running plugin hooks", stage=stage, plugins=len(hooked))
        for plugin in hooked:
            started = time.monotonic()
            value = await _call(getattr(plugin, stage), value)
            logger.debug("Plugin hook completed", stage=stage, plugin=_plugin_name(plugin),
                         duration_ms=int((time.monotonic() - started) * 1000))
        return value

    async def before_context(self, state):
        return await self._reduce("before_context", state)

    async def before_generation(self, messages):
        return await self._reduce("before_generation", messages)

    async def after_generation(self, result):
        return await self._reduce("after_generation", result)

    async def after_save(self, fragment, story_id: str) -> None:
        for plugin in self.plugins:
            hook = getattr(plugin, "after_save", None)
            if callable(hook):
                await _call(hook, fragment, story_id)
