"""Three-tier persistent context store.

Documents live under ``<root>/context``::

    global.json                          shared by every team
    teams/<team>/team.json               one per team
    teams/<team>/instances/<name>.json   one per instance

Each file holds ``{version, timestamp, scope, data}``. Reads never lock;
writes are locked read-modify-write cycles through
:func:`conductor.file_lock.update_json`.
"""

import logging
import re
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import ValidationError
from .file_lock import read_json, update_json
from .merge import DANGEROUS_KEYS, ValueKind, deep_merge, kind_of
from .system import conductor_home

logger = logging.getLogger(__name__)

CONTEXT_VERSION = "1.0"
META_KEY = "_context_meta"
NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_NAME_LENGTH = 100


class ContextLevel(str, Enum):
    """Context tiers, listed from lowest to highest merge priority."""

    GLOBAL = "global"
    TEAM = "team"
    INSTANCE = "instance"


class UpdateMode(str, Enum):
    MERGE = "merge"
    REPLACE = "replace"


def validate_name(name: str, kind: str = "name") -> str:
    """Check a team, instance or agent name used as a file name component.

    Raises:
        ValidationError: If the name is empty, too long, or has characters
            outside letters, digits, hyphen and underscore
    """
    if not isinstance(name, str) or not name:
        raise ValidationError(f"Invalid {kind}: must be a non-empty string")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Invalid {kind}: longer than {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid {kind} '{name}': only letters, digits, hyphen and underscore allowed"
        )
    return name


def _parse_level(level: ContextLevel | str) -> ContextLevel:
    try:
        return ContextLevel(level)
    except ValueError:
        valid = ", ".join(lvl.value for lvl in ContextLevel)
        raise ValidationError(f"Invalid context level '{level}'. Valid levels: {valid}") from None


class ContextStore:
    """Key-value context documents at global, team and instance scope."""

    def __init__(self, team: str, root: str | Path | None = None):
        """Initialize the store.

        Args:
            team: Team name the team and instance tiers belong to
            root: Program root directory (defaults to ``$CONDUCTOR_HOME``)
        """
        self.team = validate_name(team, "team name")
        self.root = Path(root) if root is not None else conductor_home()
        self.context_dir = self.root / "context"

    def _path(self, level: ContextLevel, instance: str | None) -> Path:
        if level is ContextLevel.GLOBAL:
            return self.context_dir / "global.json"
        team_dir = self.context_dir / "teams" / self.team
        if level is ContextLevel.TEAM:
            return team_dir / "team.json"
        if instance is None:
            raise ValidationError("Instance name is required for instance-level context")
        return team_dir / "instances" / f"{validate_name(instance, 'instance name')}.json"

    def _scope(self, level: ContextLevel, instance: str | None) -> str:
        if level is ContextLevel.GLOBAL:
            return "global"
        if level is ContextLevel.TEAM:
            return f"team:{self.team}"
        return f"instance:{self.team}/{instance}"

    def _unwrap(self, document: Any, path: Path) -> dict[str, Any]:
        if document is None:
            return {}
        if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
            raise ValidationError(f"Malformed context document: {path}")
        return document["data"]

    def _load(self, level: ContextLevel, instance: str | None) -> dict[str, Any]:
        path = self._path(level, instance)
        return self._unwrap(read_json(path), path)

    def _mutate(
        self,
        level: ContextLevel,
        instance: str | None,
        change: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]:
        """Apply ``change`` to the current data under the document's lock."""
        path = self._path(level, instance)

        def rewrite(document: Any) -> dict[str, Any]:
            data = change(self._unwrap(document, path))
            return {
                "version": CONTEXT_VERSION,
                "timestamp": datetime.now().isoformat(),
                "scope": self._scope(level, instance),
                "data": {k: v for k, v in data.items() if k != META_KEY},
            }

        document = update_json(path, rewrite)
        logger.debug(
            f"Saved {level.value} context", extra={"team": self.team, "instance": instance}
        )
        return document["data"]

    def get(
        self, level: ContextLevel | str, key: str | None = None, instance: str | None = None
    ) -> Any:
        """Return the whole document, or a single key (``None`` if absent)."""
        data = self._load(_parse_level(level), instance)
        if key is None:
            return data
        return data.get(key)

    def set(
        self, level: ContextLevel | str, key: str, value: Any, instance: str | None = None
    ) -> None:
        """Set one key."""
        if key in DANGEROUS_KEYS or key == META_KEY:
            raise ValidationError(f"Key '{key}' is not allowed")

        def change(data: dict[str, Any]) -> dict[str, Any]:
            data[key] = value
            return data

        self._mutate(_parse_level(level), instance, change)

    def delete(
        self, level: ContextLevel | str, key: str | None = None, instance: str | None = None
    ) -> bool:
        """Delete one key, or clear the document when ``key`` is omitted.

        Returns:
            True if something was removed
        """
        removed = False

        def change(data: dict[str, Any]) -> dict[str, Any]:
            nonlocal removed
            if key is None:
                removed = bool(data)
                return {}
            if key in data:
                removed = True
                del data[key]
            return data

        self._mutate(_parse_level(level), instance, change)
        return removed

    def clear(self, level: ContextLevel | str, instance: str | None = None) -> None:
        self.delete(level, None, instance)

    def update(
        self,
        level: ContextLevel | str,
        patch: dict[str, Any],
        mode: UpdateMode | str = UpdateMode.MERGE,
        instance: str | None = None,
    ) -> dict[str, Any]:
        """Apply a patch by recursive merge or wholesale replacement.

        Args:
            level: Tier to update
            patch: Object of updates
            mode: ``merge`` or ``replace``
            instance: Instance name for instance-level updates

        Returns:
            The resulting document

        Raises:
            ValidationError: If ``patch`` is not an object or ``mode`` is unknown
        """
        if kind_of(patch) is not ValueKind.OBJECT:
            raise ValidationError("Updates must be an object")
        try:
            mode = UpdateMode(mode)
        except ValueError:
            raise ValidationError(f"Invalid update mode '{mode}'") from None

        if mode is UpdateMode.REPLACE:
            return self._mutate(_parse_level(level), instance, lambda _: deep_merge({}, patch))
        return self._mutate(_parse_level(level), instance, lambda data: deep_merge(data, patch))

    def build_instance_context(self, instance: str) -> dict[str, Any]:
        """Merge global, team and instance tiers, later tiers winning.

        The result carries a ``_context_meta`` entry describing which tiers
        contributed; it is never written back to any tier.
        """
        global_data = self._load(ContextLevel.GLOBAL, None)
        team_data = self._load(ContextLevel.TEAM, None)
        instance_data = self._load(ContextLevel.INSTANCE, instance)

        merged = deep_merge(deep_merge(global_data, team_data), instance_data)
        merged[META_KEY] = {
            "sources": {
                "global": bool(global_data),
                "team": bool(team_data),
                "instance": bool(instance_data),
            },
            "instance": instance,
            "team": self.team,
            "timestamp": datetime.now().isoformat(),
        }
        return merged
