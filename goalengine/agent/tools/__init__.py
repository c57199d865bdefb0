"""Built-in tools package for the agent"""
from goalengine.agent.tools.llm_tool import LLMGenerateTool
from goalengine.agent.tools.file_tool import FileReadTool, FileWriteTool


def register_builtin_tools(registry, router, settings) -> None:
    """Register the tools every engine ships with"""
    registry.register(LLMGenerateTool(router))
    registry.register(FileWriteTool(settings.WORKSPACE_DIR))
    registry.register(FileReadTool(settings.WORKSPACE_DIR))


__all__ = ["LLMGenerateTool", "FileReadTool", "FileWriteTool", "register_builtin_tools"]
