"""
File tools — read and write text files inside the engine workspace.

Paths are resolved relative to WORKSPACE_DIR; anything escaping it is refused.
"""
from pathlib import Path

import aiofiles

from goalengine.agent.tool_registry import Tool, ToolResult, ToolParameter, ToolCategory


def resolve_workspace_path(workspace_dir: str, path: str) -> Path:
    root = Path(workspace_dir).resolve()
    target = (root / path).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"Path '{path}' is outside the workspace")
    return target


class FileWriteTool(Tool):
    """Write text content to a file in the workspace"""

    def __init__(self, workspace_dir: str):
        super().__init__(
            name="file_write",
            description=(
                "Write text content to a file in the workspace. Creates parent "
                "directories and overwrites existing files."
            ),
            category=ToolCategory.FILE_SYSTEM,
            capability_tags=["file_system", "write"],
            parameters=[
                ToolParameter(
                    name="path",
                    type="string",
                    description="File path relative to the workspace, e.g. 'notes.txt'",
                    required=True,
                ),
                ToolParameter(
                    name="content",
                    type="string",
                    description="Text to write",
                    required=True,
                ),
            ],
        )
        self.workspace_dir = workspace_dir

    async def execute(self, **kwargs) -> ToolResult:
        path = kwargs.get("path")
        if not path:
            return ToolResult(success=False, error="'path' is required")
        content = "" if kwargs.get("content") is None else str(kwargs["content"])

        target = resolve_workspace_path(self.workspace_dir, str(path))
        target.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(target, "w", encoding="utf-8") as f:
            await f.write(content)

        return ToolResult(
            success=True,
            output={
                "path": str(path),
                "bytes_written": len(content.encode("utf-8")),
                "content": content,
            },
            metadata={"absolute_path": str(target)},
        )


class FileReadTool(Tool):
    """Read a text file from the workspace"""

    def __init__(self, workspace_dir: str):
        super().__init__(
            name="file_read",
            description="Read the text content of a file in the workspace.",
            category=ToolCategory.FILE_SYSTEM,
            capability_tags=["file_system", "read"],
            parameters=[
                ToolParameter(
                    name="path",
                    type="string",
                    description="File path relative to the workspace",
                    required=True,
                ),
            ],
        )
        self.workspace_dir = workspace_dir

    async def execute(self, **kwargs) -> ToolResult:
        path = kwargs.get("path")
        if not path:
            return ToolResult(success=False, error="'path' is required")

        target = resolve_workspace_path(self.workspace_dir, str(path))
        if not target.is_file():
            return ToolResult(success=False, error=f"File not found: {path}")
        async with aiofiles.open(target, "r", encoding="utf-8") as f:
            content = await f.read()

        return ToolResult(success=True, output=content, metadata={"absolute_path": str(target)})
