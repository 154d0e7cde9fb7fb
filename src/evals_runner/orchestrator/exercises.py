"""Exercise prompts, workspaces and the agent configuration sent with a task."""

from __future__ import annotations

from pathlib import Path
from typing import Any

DEFAULT_EVAL_SETTINGS: dict[str, Any] = {
    "apiProvider": "openrouter",
    "autoApprovalEnabled": True,
    "alwaysAllowReadOnly": True,
    "alwaysAllowReadOnlyOutsideWorkspace": False,
    "alwaysAllowWrite": True,
    "alwaysAllowWriteOutsideWorkspace": False,
    "writeDelayMs": 1000,
    "alwaysAllowBrowser": True,
    "alwaysApproveResubmit": True,
    "requestDelaySeconds": 10,
    "alwaysAllowMcp": True,
    "alwaysAllowModeSwitch": True,
    "alwaysAllowSubtasks": True,
    "alwaysAllowExecute": True,
    "allowedCommands": ["*"],
    "browserToolEnabled": False,
    "enableCheckpoints": False,
    "diffEnabled": True,
    "fuzzyMatchThreshold": 1,
    "maxOpenTabsContext": 20,
    "maxWorkspaceFiles": 200,
    "terminalOutputLineLimit": 500,
    "language": "en",
    "mode": "code",
}


def build_task_configuration(run_settings: dict[str, Any], *, api_key: str | None) -> dict[str, Any]:
    """Default settings, overridden by the run's settings, plus the API key."""

    return {
        **DEFAULT_EVAL_SETTINGS,
        **run_settings,
        "openRouterApiKey": api_key,
    }


class ExerciseCatalog:
    """Layout of an exercises checkout.

    Prompts live at ``prompts/<language>.md``; each exercise is a workspace
    directory at ``<language>/<exercise>``.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def prompt_path(self, language: str) -> Path:
        return self.root / "prompts" / f"{language}.md"

    def prompt_for(self, language: str) -> str:
        path = self.prompt_path(language)
        if not path.is_file():
            raise LookupError(f"No prompt for language {language!r} at {path}.")
        return path.read_text(encoding="utf-8")

    def workspace_for(self, language: str, exercise: str) -> Path:
        return (self.root / language / exercise).resolve()

    def list_exercises(self, language: str) -> list[str]:
        language_dir = self.root / language
        if not language_dir.is_dir():
            return []
        return sorted(entry.name for entry in language_dir.iterdir() if entry.is_dir())
