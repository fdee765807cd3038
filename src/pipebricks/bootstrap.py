from __future__ import annotations

import importlib
import sys
from typing import Iterable


BUILTIN_CONNECTOR_MODULES: tuple[str, ...] = (
    # Files
    "pipebricks.connectors.csv_file",
    "pipebricks.connectors.json_file",
    # HTTP
    "pipebricks.connectors.rest",
    "pipebricks.connectors.webhook",
    # Databases
    "pipebricks.connectors.relational",
    "pipebricks.connectors.mongodb",
    # Vector stores
    "pipebricks.connectors.milvus",
    "pipebricks.connectors.pinecone",
)


_LOADED = False


def load_builtin_connectors(*, reload: bool = False, modules: Iterable[str] = BUILTIN_CONNECTOR_MODULES) -> None:
    """Import built-in connector modules so their decorators register them.

    In production, call with reload=False (default) so imports are cheap.
    In tests, call with reload=True to clear the registry and re-run decorators.
    """

    global _LOADED

    if _LOADED and not reload:
        return

    if reload:
        from pipebricks.connectors.registry import ConnectorRegistry

        ConnectorRegistry.clear()

    for module_name in modules:
        if reload:
            sys.modules.pop(module_name, None)
        importlib.import_module(module_name)

    _LOADED = True
