from __future__ import annotations

from .base import Tool
from .builtin_tools.bash_tool import BashTool
from .builtin_tools.file_edit import EditFileTool
from .builtin_tools.file_read import ReadFileTool
from .builtin_tools.file_write import WriteFileTool
from .builtin_tools.grep_tool import GrepTool
from .builtin_tools.listdir import ListDirTool
from .builtin_tools.webfetch_tool import WebFetchTool


def builtin_tools() -> list[Tool]:
    return [
        BashTool(),
        ReadFileTool(),
        ListDirTool(),
        GrepTool(),
        WriteFileTool(),
        EditFileTool(),
        WebFetchTool(),
    ]
