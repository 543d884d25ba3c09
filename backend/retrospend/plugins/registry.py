from __future__ import annotations

import importlib
import pkgutil

from retrospend.plugins.base import FileParserPlugin

_registry: dict[str, dict[str, FileParserPlugin]] = {
    "parser": {},
}


def register(plugin_type: str, plugin: FileParserPlugin) -> None:
    if plugin_type not in _registry:
        raise ValueError(f"Unknown plugin type: {plugin_type}")
    _registry[plugin_type][plugin.name] = plugin


def get(plugin_type: str, name: str) -> FileParserPlugin | None:
    return _registry.get(plugin_type, {}).get(name)


def get_all(plugin_type: str) -> dict[str, FileParserPlugin]:
    return _registry.get(plugin_type, {})


def discover() -> None:
    """Auto-discover and register parsers from retrospend.plugins.parsers."""
    import retrospend.plugins.parsers as parsers_pkg

    for _importer, modname, _ispkg in pkgutil.iter_modules(parsers_pkg.__path__):
        module = importlib.import_module(f"retrospend.plugins.parsers.{modname}")
        if hasattr(module, "register_plugin"):
            module.register_plugin()
