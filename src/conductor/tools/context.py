"""Tools exposing the three-tier context store."""

import logging
from datetime import datetime
from typing import Any

from ..context_store import ContextLevel, ContextStore, UpdateMode
from ..errors import ContextError
from ..protocol import ToolDefinition, ToolHandler

logger = logging.getLogger(__name__)

COMBINED = "combined"

_LEVELS = [level.value for level in ContextLevel]

_INSTANCE_PROPERTY = {
    "type": "string",
    "description": "Instance name (instance level only, defaults to the current instance)",
}


class ContextToolset:
    """``context_get``, ``context_set``, ``context_update`` and ``context_delete``.

    Failures of the store are reported as ``{"success": false, "error": ...}``
    results rather than protocol errors so the calling agent can react.
    """

    def __init__(self, store: ContextStore, instance_name: str):
        self.store = store
        self.instance_name = instance_name

    def definitions(self) -> list[tuple[ToolDefinition, ToolHandler]]:
        return [
            (
                ToolDefinition(
                    name="context_get",
                    description=(
                        "Retrieve context at a level (global, team, instance) or the "
                        "combined view for an instance"
                    ),
                    input_schema={
                        "type": "object",
                        "properties": {
                            "level": {"type": "string", "enum": [*_LEVELS, COMBINED]},
                            "key": {
                                "type": "string",
                                "description": "Specific key; omit for the whole document",
                            },
                            "instance_name": _INSTANCE_PROPERTY,
                        },
                        "required": ["level"],
                    },
                ),
                self.context_get,
            ),
            (
                ToolDefinition(
                    name="context_set",
                    description="Set one context value at a level",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "level": {"type": "string", "enum": _LEVELS},
                            "key": {"type": "string"},
                            "value": {"description": "Any JSON value"},
                            "instance_name": _INSTANCE_PROPERTY,
                        },
                        "required": ["level", "key", "value"],
                    },
                ),
                self.context_set,
            ),
            (
                ToolDefinition(
                    name="context_update",
                    description="Update multiple context values at once",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "level": {"type": "string", "enum": _LEVELS},
                            "updates": {
                                "type": "object",
                                "description": "Key-value pairs to apply",
                            },
                            "operation": {
                                "type": "string",
                                "enum": [mode.value for mode in UpdateMode],
                                "default": UpdateMode.MERGE.value,
                            },
                            "instance_name": _INSTANCE_PROPERTY,
                        },
                        "required": ["level", "updates"],
                    },
                ),
                self.context_update,
            ),
            (
                ToolDefinition(
                    name="context_delete",
                    description="Delete a context key, or clear the level when no key is given",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "level": {"type": "string", "enum": _LEVELS},
                            "key": {"type": "string"},
                            "instance_name": _INSTANCE_PROPERTY,
                        },
                        "required": ["level"],
                    },
                ),
                self.context_delete,
            ),
        ]

    def _instance(self, arguments: dict[str, Any]) -> str:
        return arguments.get("instance_name") or self.instance_name

    def _failure(self, error: ContextError, level: Any, **fields: Any) -> dict[str, Any]:
        logger.warning(f"Context operation failed at level {level}: {error}")
        return {"success": False, **error.to_dict(), "level": level, **fields}

    async def context_get(self, arguments: dict[str, Any]) -> dict[str, Any]:
        level = arguments.get("level")
        key = arguments.get("key")
        instance = self._instance(arguments)
        try:
            if level == COMBINED:
                context = self.store.build_instance_context(instance)
                if key:
                    context = context.get(key)
            else:
                context = self.store.get(level, key, instance)
        except ContextError as e:
            return self._failure(e, level, key=key)

        return {
            "success": True,
            "level": level,
            "key": key,
            "instance_name": instance if level in (ContextLevel.INSTANCE.value, COMBINED) else None,
            "context": context,
            "found": context is not None,
        }

    async def context_set(self, arguments: dict[str, Any]) -> dict[str, Any]:
        level = arguments.get("level")
        key = arguments.get("key")
        if not isinstance(key, str) or not key:
            raise ValueError("Missing or invalid key parameter")
        if "value" not in arguments:
            raise ValueError("Missing value parameter")
        instance = self._instance(arguments)
        try:
            self.store.set(level, key, arguments["value"], instance)
        except ContextError as e:
            return self._failure(e, level, key=key)
        return {"success": True, "level": level, "key": key}

    async def context_update(self, arguments: dict[str, Any]) -> dict[str, Any]:
        level = arguments.get("level")
        updates = arguments.get("updates")
        operation = arguments.get("operation") or UpdateMode.MERGE.value
        instance = self._instance(arguments)
        try:
            self.store.update(level, updates, operation, instance)
        except ContextError as e:
            return self._failure(e, level)
        return {
            "success": True,
            "level": level,
            "operation": operation,
            "update_count": len(updates),
            "instance_name": instance if level == ContextLevel.INSTANCE.value else None,
            "timestamp": datetime.now().isoformat(),
        }

    async def context_delete(self, arguments: dict[str, Any]) -> dict[str, Any]:
        level = arguments.get("level")
        key = arguments.get("key")
        instance = self._instance(arguments)
        try:
            deleted = self.store.delete(level, key, instance)
        except ContextError as e:
            return self._failure(e, level, key=key)
        return {"success": True, "level": level, "key": key, "deleted": deleted}
