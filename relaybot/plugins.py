"""
Plugin loader.

Scans a directory once for `*.py` files (skipping names that start with `_`)
and registers what each module exports into the HandlerRegistry as command
handlers. A module may export either:

    def register(registry) -> None          # full control, may register several
    async def handle(message, transport)    # single handler
        NAME = "..."                        # optional, defaults to the file stem
        def applies(message) -> bool        # optional predicate

A file that fails to import or register is logged and skipped.
"""
from __future__ import annotations

import importlib.util
import logging
import sys
from pathlib import Path
from types import ModuleType

from relaybot import perf
from relaybot.errors import PluginLoadError
from relaybot.registry import COMMAND, HandlerRegistry

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

PLUGIN_EXTENSIONS = (".py",)
MODULE_PREFIX = "relaybot_plugin_"


class PluginLoader:
    def __init__(self, registry: HandlerRegistry):
        self.registry = registry
        self.loaded: list[str] = []
        self.failed: dict[str, str] = {}

    def discover(self, directory: Path) -> list[Path]:
        if not directory.is_dir():
            return []
        return sorted(
            p for p in directory.iterdir()
            if p.is_file()
            and p.suffix.lower() in PLUGIN_EXTENSIONS
            and not p.name.startswith(("_", "."))
        )

    def load_all(self, directory: Path) -> int:
        """Load every eligible file. Returns the number of handlers registered."""
        files = self.discover(directory)
        if not files:
            log.info(f"No plugins found in {directory}")
            lifecycle_log.info(f"PLUGINS | NONE | {directory}")
            return 0

        log.info(f"Installing {len(files)} plugin file(s) from {directory}")
        registered = 0
        for path in files:
            try:
                count = self.load_file(path)
            except PluginLoadError as e:
                log.error(f"Plugin {path.name} skipped: {e.reason}")
                self.failed[path.name] = e.reason
                perf.incr("plugin_load_errors", plugin=path.name)
                continue
            self.loaded.append(path.name)
            registered += count

        log.info(f"Plugins installed: {registered} handler(s), {len(self.failed)} failure(s)")
        lifecycle_log.info(f"PLUGINS | LOADED | count={registered} failed={len(self.failed)}")
        perf.gauge("plugins_loaded", registered)
        return registered

    def load_file(self, path: Path) -> int:
        """Import one plugin file and register its handlers.

        Raises PluginLoadError on any failure. Nothing is registered from a
        file whose register() raises part-way; the registry is append-only, so
        registration happens into a scratch registry first.
        """
        module = self._import(path)

        scratch = HandlerRegistry()
        source = f"plugin:{path.name}"
        register = getattr(module, "register", None)
        handle = getattr(module, "handle", None)

        try:
            if callable(register):
                register(scratch)
            elif callable(handle):
                name = getattr(module, "NAME", None) or path.stem
                scratch.register(name, handle, predicate=getattr(module, "applies", None), kind=COMMAND)
            else:
                raise PluginLoadError(str(path), "exports neither register() nor handle()")
        except PluginLoadError:
            sys.modules.pop(module.__name__, None)
            raise
        except Exception as e:
            sys.modules.pop(module.__name__, None)
            raise PluginLoadError(str(path), f"registration failed: {e!r}") from e

        for entry in scratch:
            self.registry.register(entry.name, entry.action, entry.predicate, kind=entry.kind, source=source)
        log.debug(f"Plugin {path.name} registered {len(scratch)} handler(s)")
        return len(scratch)

    def _import(self, path: Path) -> ModuleType:
        module_name = f"{MODULE_PREFIX}{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise PluginLoadError(str(path), "cannot build an import spec")
        module = importlib.util.module_from_spec(spec)
        # dataclasses and typing resolve the defining module through sys.modules
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginLoadError(str(path), f"import failed: {e!r}") from e
        return module
