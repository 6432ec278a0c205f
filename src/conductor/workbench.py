"""Shared ``.workbench`` scaffold used by a team to exchange written work."""

import json
import logging
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

GITIGNORE_ENTRY = ".workbench/"

README_TEMPLATE = """# Project: {project}

## Overview
Created: {created}

## Objective
[Set by the orchestrator]

## Team
- **Orchestrator**: Main coordinator
- **Agents**: [Listed as they are assigned]

## Status
- [ ] Planning
- [ ] In Progress
- [ ] Review
- [ ] Complete
"""

ASSIGNMENTS_TEMPLATE = """# Task Assignments

## Active Tasks

[Assignments are added by the orchestrator]

## Completed Tasks

[Completed tasks are moved here]
"""

CONTEXT_TEMPLATE = """# Shared Context

## Project Context
[Key information for all agents]

## Technical Context
[Architecture, constraints, requirements]

## Progress Notes
[Updates as work progresses]
"""

AGENT_INSTRUCTIONS = """
## Workbench

All work is documented under the .workbench/ folder:

**Current Project**: {project}
**Project Path**: {path}

### Files
- README.md: project overview
- assignments.md: your tasks
- context.md: information shared by all agents
- findings/: where you save your work

### Output
Save completed analysis or output to
`findings/{{your-agent-name}}-{{topic}}-{{unique-id}}.md`, for example
`findings/reviewer-security-issues-final.md`.

Check assignments.md for your tasks and their output file names. Put
information every agent needs in context.md and refer to other agents'
findings by file name.
"""

ORCHESTRATOR_INSTRUCTIONS = """
## Workbench Management

You manage the project workbench at **{path}**.

### Responsibilities
1. Record the project objective in README.md
2. Write clear assignments in assignments.md
3. Track progress in status.json
4. Review agent output in findings/
5. Keep context.md current

### Assignment format
Every assignment names what to analyze or create, the exact output file and
any dependency on other agents' work:

```
@code_analyzer: Analyze the authentication system in /src/auth
Output to: findings/code_analyzer-auth-security-analysis.md
Focus on: Security vulnerabilities
```

Always give agents a complete file name, never a template. Refer to files
instead of copying their content.
"""


class Workbench:
    """The ``.workbench`` directory of a working directory."""

    def __init__(self, directory: str | Path, project: str | None = None):
        self.root = Path(directory) / ".workbench"
        self.project = project or datetime.now().strftime("%Y%m%d_%H%M%S") + "-session"
        self.project_path = self.root / "active" / self.project

    def initialize(self) -> Path:
        """Create the directory tree and seed project files that don't exist yet."""
        for directory in (
            self.root / "active",
            self.root / "completed",
            self.root / "templates",
            self.project_path / "findings",
        ):
            directory.mkdir(parents=True, exist_ok=True)

        self._ensure_gitignore()
        created = datetime.now().isoformat()
        self._seed("README.md", README_TEMPLATE.format(project=self.project, created=created))
        self._seed("assignments.md", ASSIGNMENTS_TEMPLATE)
        self._seed("context.md", CONTEXT_TEMPLATE)
        self._seed(
            "status.json",
            json.dumps(
                {
                    "project": self.project,
                    "created": created,
                    "status": "planning",
                    "agents": {},
                    "progress": 0,
                },
                indent=2,
            ),
        )
        logger.debug(f"Workbench ready at {self.project_path}")
        return self.project_path

    def _seed(self, name: str, content: str) -> None:
        path = self.project_path / name
        if not path.exists():
            path.write_text(content)

    def _ensure_gitignore(self) -> None:
        gitignore = self.root.parent / ".gitignore"
        content = gitignore.read_text() if gitignore.exists() else ""
        if ".workbench" in content:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        gitignore.write_text(content + f"\n# Conductor workbench\n{GITIGNORE_ENTRY}\n")

    def instructions(self, is_main: bool = False) -> str:
        """Usage text appended to an instance's system prompt."""
        if is_main:
            return ORCHESTRATOR_INSTRUCTIONS.format(path=self.project_path)
        return AGENT_INSTRUCTIONS.format(project=self.project, path=self.project_path)
