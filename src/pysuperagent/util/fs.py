from __future__ import annotations
from pathlib import Path


class FsError(RuntimeError):
    pass


def resolve_path(cwd: Path, path_str: str) -> Path:
    p = Path(path_str).expanduser()
    if not p.is_absolute():
        p = cwd / p
    p = p.resolve()
    # Tools stay inside the working directory.
    try:
        p.relative_to(cwd.resolve())
    except ValueError:
        raise FsError(f"Path escapes working directory: {path_str}") from None
    return p


def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n... (truncated)"
