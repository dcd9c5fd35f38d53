from __future__ import annotations
import asyncio
import sys
import tempfile
from pathlib import Path

from pysuperagent.mcp.manager import CapabilityManager
from pysuperagent.mcp.models import CapabilityServerConfig
from pysuperagent.tools.base import ToolContext
from pysuperagent.tools.builtin_tools.bash_tool import BashTool
from pysuperagent.tools.builtin_tools.file_edit import EditFileTool
from pysuperagent.tools.builtin_tools.file_read import ReadFileTool
from pysuperagent.tools.builtin_tools.file_write import WriteFileTool
from pysuperagent.tools.builtin_tools.grep_tool import GrepTool
from pysuperagent.tools.builtin_tools.listdir import ListDirTool


async def main() -> None:
    with tempfile.TemporaryDirectory() as td:
        cwd = Path(td)
        ctx = ToolContext(cwd=str(cwd))

        w = WriteFileTool()
        print((await w.execute(ctx, {"path": "a.txt", "content": "hello\nworld\n"})).content)

        r = ReadFileTool()
        print("READ:", (await r.execute(ctx, {"path": "a.txt"})).content.strip())

        g = GrepTool()
        print("GREP:", (await g.execute(ctx, {"pattern": "world", "path": "."})).content.strip())

        ls = ListDirTool()
        print("LIST:", (await ls.execute(ctx, {"path": "."})).content.strip())

        e = EditFileTool()
        print((await e.execute(ctx, {"path": "a.txt", "old_string": "world", "new_string": "WORLD"})).content)
        print("READ2:", (await r.execute(ctx, {"path": "a.txt"})).content.strip())

        b = BashTool()
        print((await b.execute(ctx, {"command": "echo hi && ls"})).content)

        # capability server round trip through the manager
        manager = CapabilityManager()
        try:
            await manager.add_server(CapabilityServerConfig(
                name="example",
                command=sys.executable,
                args=["-m", "pysuperagent.mcp.example_server"],
            ))
            print("TOOLS:", ", ".join(t.name for t in manager.get_tools()))
            print("ECHO:", await manager.invoke("example:echo", {"text": "ping"}, timeout=10))
        finally:
            await manager.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
