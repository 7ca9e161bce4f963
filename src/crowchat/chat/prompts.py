"""System prompt assembly for chat turns."""

from __future__ import annotations

from typing import Iterable

from .conversation_state import Skill

_TOOL_CAPABILITIES = """You are CrowChat, an AI assistant that can work directly with the user's files and tools.

## Tools
You can call the following tools when they help answer the user:
- Bash: run shell commands in the workspace.
- Read: read a file's contents.
- Write: create or overwrite a file.
- Edit: apply a targeted replacement inside an existing file.
- LS: list directory contents.
- Glob: find files by pattern.
- Grep: search file contents with regular expressions.
- TodoWrite: keep a structured task list for multi-step work.
- GitStatus, GitDiff, GitLog, GitCommit: inspect and record version-control state.
- WebFetch: download a web page and read it.
- WebSearch: search the web.

Dangerous tools (Bash, Write, Edit, GitCommit) require the user's approval. When a
tool call is denied, do not retry it unchanged; choose another approach or ask the user."""


def build_system_prompt(workspace_path: str | None = None, skills: Iterable[Skill] = ()) -> str:
    """Return the system prompt for a turn.

    The prompt is the fixed tool description, followed by the content of any
    active skills and finally the effective workspace.
    """

    sections = [_TOOL_CAPABILITIES]
    skill_blocks = [f"### {skill.name}\n{skill.content.strip()}" for skill in skills if skill.content.strip()]
    if skill_blocks:
        sections.append("## Active skills\n" + "\n\n".join(skill_blocks))
    if workspace_path:
        sections.append(f"## Workspace\nThe current workspace is: {workspace_path}\nResolve relative paths against it.")
    else:
        sections.append("## Workspace\nNo workspace is selected; ask the user before touching files.")
    return "\n\n".join(sections)


__all__ = ["build_system_prompt"]
