"""Tools backed by the hardened per-project context store."""

import logging
from typing import Any

from ..errors import ContextError
from ..protocol import ToolDefinition, ToolHandler
from ..secure_context import FindingType, SecureContextStore, Severity, compute_paths_hash

logger = logging.getLogger(__name__)


class AnalysisToolset:
    """Agent memory, the shared findings ledger and repository state.

    Every tool acts on behalf of ``agent_name``; the agent cannot read or
    write another agent's private context through these tools.
    """

    def __init__(self, store: SecureContextStore, agent_name: str):
        self.store = store
        self.agent_name = agent_name

    def definitions(self) -> list[tuple[ToolDefinition, ToolHandler]]:
        severities = [severity.value for severity in Severity]
        finding_types = [finding_type.value for finding_type in FindingType]
        return [
            (
                ToolDefinition(
                    name="get_agent_context",
                    description="Get your own persisted context from previous sessions",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "key": {
                                "type": "string",
                                "description": "Specific key; omit for all context",
                            },
                        },
                    },
                ),
                self.get_agent_context,
            ),
            (
                ToolDefinition(
                    name="save_agent_context",
                    description="Save context for your future sessions",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "data": {
                                "type": "object",
                                "description": "Context data (merged with existing)",
                            },
                            "replace": {
                                "type": "boolean",
                                "description": "Replace all existing context instead of merging",
                                "default": False,
                            },
                        },
                        "required": ["data"],
                    },
                ),
                self.save_agent_context,
            ),
            (
                ToolDefinition(
                    name="share_finding",
                    description="Share an important finding with other agents",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "severity": {"type": "string", "enum": severities},
                            "type": {"type": "string", "enum": finding_types},
                            "summary": {"type": "string"},
                            "affected": {"type": "array", "items": {"type": "string"}},
                            "details": {"type": "object"},
                        },
                        "required": ["severity", "type", "summary"],
                    },
                ),
                self.share_finding,
            ),
            (
                ToolDefinition(
                    name="get_shared_findings",
                    description="Get findings shared by agents, optionally filtered",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "severity": {"type": "string", "enum": severities},
                            "type": {"type": "string", "enum": finding_types},
                            "source": {"type": "string"},
                            "since": {
                                "type": "string",
                                "description": "ISO-8601 timestamp lower bound",
                            },
                        },
                    },
                ),
                self.get_shared_findings,
            ),
            (
                ToolDefinition(
                    name="check_reanalysis_needed",
                    description="Check if files have changed since last analysis",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "paths": {"type": "array", "items": {"type": "string"}},
                            "last_hash": {
                                "type": "string",
                                "description": "Hash from the previous analysis",
                            },
                            "record": {
                                "type": "boolean",
                                "description": "Record the current hash as analysed",
                                "default": False,
                            },
                        },
                        "required": ["paths"],
                    },
                ),
                self.check_reanalysis_needed,
            ),
            (
                ToolDefinition(
                    name="repo_state",
                    description="Get or save shared repository state",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "action": {"type": "string", "enum": ["get", "save"]},
                            "data": {"type": "object"},
                        },
                        "required": ["action"],
                    },
                ),
                self.repo_state,
            ),
        ]

    @staticmethod
    def _failure(error: ContextError) -> dict[str, Any]:
        logger.warning(f"Analysis context operation failed: {error}")
        return {"success": False, **error.to_dict()}

    async def get_agent_context(self, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            document = self.store.get_context(self.agent_name)
        except ContextError as e:
            return self._failure(e)
        if document is None:
            return {"success": True, "message": "No context found", "data": None}
        key = arguments.get("key")
        if key:
            return {"success": True, "data": document["data"].get(key)}
        return {"success": True, "data": document["data"]}

    async def save_agent_context(self, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            self.store.save_context(
                self.agent_name, arguments.get("data"), merge=not arguments.get("replace")
            )
        except ContextError as e:
            return self._failure(e)
        return {"success": True, "message": "Context saved successfully"}

    async def share_finding(self, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            finding = self.store.share_finding(
                self.agent_name,
                arguments.get("severity"),
                arguments.get("type"),
                arguments.get("summary"),
                affected=arguments.get("affected"),
                details=arguments.get("details"),
            )
        except ContextError as e:
            return self._failure(e)
        return {"success": True, "finding_id": finding["id"], "message": "Finding shared"}

    async def get_shared_findings(self, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            findings = self.store.get_shared_findings(
                severity=arguments.get("severity"),
                type=arguments.get("type"),
                source=arguments.get("source"),
                since=arguments.get("since"),
            )
        except ContextError as e:
            return self._failure(e)
        return {"success": True, "count": len(findings), "findings": findings}

    async def check_reanalysis_needed(self, arguments: dict[str, Any]) -> dict[str, Any]:
        paths = arguments.get("paths")
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise ValueError("paths must be a list of strings")
        try:
            needed = self.store.needs_reanalysis(
                paths, arguments.get("last_hash"), agent_name=self.agent_name
            )
            if arguments.get("record"):
                current_hash = self.store.record_analysis(self.agent_name, paths)
            else:
                current_hash = compute_paths_hash(paths)
        except ContextError as e:
            return self._failure(e)
        return {"success": True, "needs_reanalysis": needed, "current_hash": current_hash}

    async def repo_state(self, arguments: dict[str, Any]) -> dict[str, Any]:
        action = arguments.get("action")
        try:
            if action == "get":
                state = self.store.get_repo_state()
                return {"success": True, "data": state["data"] if state else None}
            if action == "save":
                self.store.save_repo_state(arguments.get("data"))
                return {"success": True, "message": "Repository state saved"}
        except ContextError as e:
            return self._failure(e)
        raise ValueError(f"Invalid action '{action}': expected get or save")
