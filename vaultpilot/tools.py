from __future__ import annotations

import asyncio
import fnmatch
import inspect
import logging
import os
import re
import signal
from pathlib import Path
from typing import Any

from vaultpilot.models import NO_OUTPUT, Tool, ToolResult

logger = logging.getLogger(__name__)

BASH_TIMEOUT = 30  # seconds
MAX_OUTPUT_BYTES = 1024 * 1024
MAX_RESULT_LINES = 200
DEFAULT_READ_LIMIT = 2000

BLOCKED_COMMANDS = [
    "rm -rf /",
    "rm -rf ~",
    "mkfs",
    "dd if=",
    ":(){ :|:& };:",
    ":(){:|:&};:",
]

SKIPPED_DIRS = {".git"}

# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

TOOLS: list[Tool] = [
    Tool(
        name="read_file",
        description=(
            "Read the contents of a file. Returns the file content with line numbers. "
            "Use this to understand code before modifying it."
        ),
        parameters={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file, relative to the vault root"},
                "offset": {"type": "number", "description": "Line number to start reading from (1-based). Optional."},
                "limit": {"type": "number", "description": "Maximum number of lines to read. Optional, defaults to 2000."},
            },
            "required": ["file_path"],
        },
    ),
    Tool(
        name="write_file",
        description=(
            "Create a new file or completely overwrite an existing file. "
            "Use edit_file for partial changes to existing files."
        ),
        parameters={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file, relative to the vault root"},
                "content": {"type": "string", "description": "The full content to write to the file"},
            },
            "required": ["file_path", "content"],
        },
    ),
    Tool(
        name="edit_file",
        description=(
            "Make a targeted edit to an existing file by replacing a specific string with new content. "
            "The old_string must match exactly and be unique in the file."
        ),
        parameters={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path to the file, relative to the vault root"},
                "old_string": {"type": "string", "description": "The exact string to find and replace. Must be unique in the file."},
                "new_string": {"type": "string", "description": "The replacement string"},
            },
            "required": ["file_path", "old_string", "new_string"],
        },
    ),
    Tool(
        name="bash",
        description=(
            "Execute a bash command in the vault directory. Use for git, build tools, and other CLI "
            "operations. Commands run with a 30-second timeout."
        ),
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The bash command to execute"},
            },
            "required": ["command"],
        },
    ),
    Tool(
        name="grep",
        description=(
            "Search for a regex pattern in files. Returns matching lines with file paths and line numbers. "
            "Use for finding code, function definitions, imports, etc."
        ),
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regex pattern to search for"},
                "path": {"type": "string", "description": "Directory or file to search in, relative to vault root. Defaults to vault root."},
                "include": {"type": "string", "description": 'Glob pattern to filter files, e.g. "*.py" or "*.md"'},
                "context_lines": {"type": "number", "description": "Number of context lines before and after each match. Default 0."},
            },
            "required": ["pattern"],
        },
    ),
    Tool(
        name="glob",
        description=(
            "Find files matching a glob pattern. Returns a list of matching file paths. "
            "Use for discovering project structure."
        ),
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": 'Glob pattern, e.g. "**/*.py", "notes/**/*.md", "*.json"'},
                "path": {"type": "string", "description": "Directory to search in, relative to vault root. Defaults to vault root."},
            },
            "required": ["pattern"],
        },
    ),
    Tool(
        name="list_directory",
        description="List the contents of a directory. Shows files and subdirectories with their types.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path relative to vault root. Defaults to vault root."},
            },
            "required": [],
        },
    ),
]

TOOL_NAMES: list[str] = [t.name for t in TOOLS]
_SCHEMAS: dict[str, Tool] = {t.name: t for t in TOOLS}


class PathTraversalError(Exception):
    def __init__(self) -> None:
        super().__init__("Path traversal not allowed: path must be within the vault")


def _split_lines(text: str) -> list[str]:
    if not text:
        return []
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    return default


def _cap_lines(lines: list[str], noun: str) -> str:
    if len(lines) <= MAX_RESULT_LINES:
        return "\n".join(lines)
    extra = len(lines) - MAX_RESULT_LINES
    return "\n".join(lines[:MAX_RESULT_LINES]) + f"\n... ({extra} more {noun})"


# ---------------------------------------------------------------------------
# Tool executor
# ---------------------------------------------------------------------------

class ToolExecutor:
    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run a tool. Never raises: every failure is an error ToolResult."""
        schema = _SCHEMAS.get(name)
        method = getattr(self, f"_tool_{name}", None)
        if schema is None or method is None:
            return ToolResult.error(f"Unknown tool: {name}")

        missing = [p for p in schema.parameters.get("required", []) if arguments.get(p) is None]
        if missing:
            return ToolResult.error(f"Error: missing required argument(s) for {name}: {', '.join(missing)}")
        known = schema.parameters.get("properties", {})
        kwargs = {k: v for k, v in arguments.items() if k in known and v is not None}

        logger.debug("tool %s(%s)", name, ", ".join(kwargs))
        try:
            if inspect.iscoroutinefunction(method):
                result = await method(**kwargs)
            else:
                result = await asyncio.to_thread(method, **kwargs)
        except PathTraversalError as e:
            result = ToolResult.error(str(e))
        except FileNotFoundError as e:
            result = ToolResult.error(f"Error: no such file or directory: {self._display(e.filename)}")
        except IsADirectoryError as e:
            result = ToolResult.error(f"Error: is a directory: {self._display(e.filename)}")
        except NotADirectoryError as e:
            result = ToolResult.error(f"Error: not a directory: {self._display(e.filename)}")
        except UnicodeDecodeError:
            result = ToolResult.error("Error: file is not valid UTF-8 text")
        except Exception as e:
            logger.debug("tool %s raised", name, exc_info=True)
            result = ToolResult.error(f"Error executing {name}: {e}")

        if result.is_error:
            logger.info("tool %s failed: %s", name, result.content[:200])
        return result

    # -- path confinement --------------------------------------------------

    def resolve_path(self, path: str | None) -> Path:
        """Resolve *path* against the root; refuse anything that escapes it."""
        candidate = (self.root / str(path or ".")).resolve()
        if candidate != self.root and not candidate.is_relative_to(self.root):
            raise PathTraversalError()
        return candidate

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix() or "."
        except ValueError:
            return str(path)

    def _display(self, filename: Any) -> str:
        if filename is None:
            return "?"
        return self._relative(Path(filename))

    # -- file tools ---------------------------------------------------------

    def _tool_read_file(self, file_path: str, offset: Any = 1, limit: Any = DEFAULT_READ_LIMIT) -> ToolResult:
        path = self.resolve_path(file_path)
        lines = _split_lines(path.read_text(encoding="utf-8"))
        start = max(0, _as_int(offset, 1) - 1)
        count = _as_int(limit, DEFAULT_READ_LIMIT)
        if count < 1:
            return ToolResult.error(f"limit must be positive, got {count}")
        selected = lines[start:start + count]
        if not selected:
            if not lines:
                return ToolResult.ok("(empty file)")
            return ToolResult.ok(f"(offset {start + 1} is past the end of the file: {len(lines)} lines)")
        return ToolResult.ok("\n".join(f"{start + i + 1}\t{line}" for i, line in enumerate(selected)))

    def _tool_write_file(self, file_path: str, content: Any) -> ToolResult:
        path = self.resolve_path(file_path)
        text = str(content)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return ToolResult.ok(f"Wrote {len(_split_lines(text))} lines to {file_path}")

    def _tool_edit_file(self, file_path: str, old_string: Any, new_string: Any) -> ToolResult:
        path = self.resolve_path(file_path)
        old, new = str(old_string), str(new_string)
        if not old:
            return ToolResult.error("old_string must not be empty")
        content = path.read_text(encoding="utf-8")
        occurrences = content.count(old)
        if occurrences == 0:
            return ToolResult.error(f"old_string not found in {file_path}")
        if occurrences > 1:
            return ToolResult.error(
                f"old_string found {occurrences} times in {file_path}; must be unique. "
                "Provide more surrounding context."
            )
        path.write_text(content.replace(old, new, 1), encoding="utf-8")
        return ToolResult.ok(f"Edited {file_path} successfully")

    def _tool_list_directory(self, path: str = ".") -> ToolResult:
        target = self.resolve_path(path)
        entries = list(target.iterdir())
        dirs = sorted((e for e in entries if e.is_dir()), key=lambda e: (e.name.lower(), e.name))
        files = sorted((e for e in entries if not e.is_dir()), key=lambda e: (e.name.lower(), e.name))
        lines = [f"[dir]  {e.name}" for e in dirs] + [f"[file] {e.name}" for e in files]
        return ToolResult.ok("\n".join(lines) or "(empty directory)")

    # -- search tools -------------------------------------------------------

    def _iter_files(self, target: Path, include: str | None = None):
        if target.is_file():
            if not include or fnmatch.fnmatch(target.name, include):
                yield target
            return
        for dirpath, dirnames, filenames in os.walk(target):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRS)
            for filename in sorted(filenames):
                if include and not fnmatch.fnmatch(filename, include):
                    continue
                path = Path(dirpath) / filename
                # symlinks may point out of the vault
                if not path.resolve().is_relative_to(self.root):
                    continue
                yield path

    def _tool_grep(self, pattern: str, path: str = ".", include: str | None = None, context_lines: Any = 0) -> ToolResult:
        target = self.resolve_path(path)
        try:
            regex = re.compile(str(pattern))
        except re.error as e:
            return ToolResult.error(f"Invalid regex pattern: {e}")
        context = max(0, _as_int(context_lines, 0))

        out: list[str] = []
        for file in self._iter_files(target, include):
            try:
                lines = _split_lines(file.read_text(encoding="utf-8"))
            except (UnicodeDecodeError, OSError):
                continue
            hits = [i for i, line in enumerate(lines) if regex.search(line)]
            if hits:
                out.extend(self._format_hits(self._relative(file), lines, hits, context))

        if not out:
            return ToolResult.ok("No matches found")
        return ToolResult.ok(_cap_lines(out, "lines"))

    @staticmethod
    def _format_hits(rel: str, lines: list[str], hits: list[int], context: int) -> list[str]:
        if context == 0:
            return [f"{rel}:{i + 1}:{lines[i]}" for i in hits]

        # grep -C style: merged windows, "--" between non-adjacent groups
        hit_set = set(hits)
        windows: list[list[int]] = []
        for i in hits:
            lo, hi = max(0, i - context), min(len(lines) - 1, i + context)
            if windows and lo <= windows[-1][1] + 1:
                windows[-1][1] = max(windows[-1][1], hi)
            else:
                windows.append([lo, hi])
        out: list[str] = []
        for n, (lo, hi) in enumerate(windows):
            if n:
                out.append("--")
            for i in range(lo, hi + 1):
                sep = ":" if i in hit_set else "-"
                out.append(f"{rel}{sep}{i + 1}{sep}{lines[i]}")
        return out

    def _tool_glob(self, pattern: str, path: str = ".") -> ToolResult:
        target = self.resolve_path(path)
        pattern = str(pattern)
        # bare name patterns match at any depth
        matches = target.glob(pattern) if "/" in pattern else target.rglob(pattern)
        found: list[str] = []
        for match in matches:
            if any(part in SKIPPED_DIRS for part in match.relative_to(target).parts):
                continue
            resolved = match.resolve()
            if not resolved.is_file() or not resolved.is_relative_to(self.root):
                continue
            found.append(self._relative(match))
        if not found:
            return ToolResult.ok("No files matched")
        return ToolResult.ok(_cap_lines(sorted(found), "files"))

    # -- shell --------------------------------------------------------------

    async def _tool_bash(self, command: str) -> ToolResult:
        command = str(command)
        for blocked in BLOCKED_COMMANDS:
            if blocked in command:
                return ToolResult.error(f"Blocked dangerous command: {blocked}")

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=self.root,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            (stdout, out_cut), (stderr, err_cut), returncode = await asyncio.wait_for(
                asyncio.gather(
                    _read_capped(proc.stdout, MAX_OUTPUT_BYTES),
                    _read_capped(proc.stderr, MAX_OUTPUT_BYTES),
                    proc.wait(),
                ),
                timeout=BASH_TIMEOUT,
            )
        except asyncio.TimeoutError:
            _kill_group(proc)
            await proc.wait()
            return ToolResult.error(f"Command timed out after {BASH_TIMEOUT} seconds")

        out = stdout.decode("utf-8", errors="replace").rstrip()
        err = stderr.decode("utf-8", errors="replace").rstrip()
        parts = [p for p in (out, f"STDERR:\n{err}" if err else "") if p]
        text = "\n".join(parts)
        truncated = out_cut or err_cut
        if len(text.encode("utf-8")) > MAX_OUTPUT_BYTES:
            text = text.encode("utf-8")[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
            truncated = True
        if truncated:
            text += "\n... (output truncated at 1 MiB)"
        if returncode != 0:
            text = (text + "\n" if text else "") + f"(exit code {returncode})"
            return ToolResult.error(text)
        return ToolResult.ok(text or NO_OUTPUT)


async def _read_capped(stream: asyncio.StreamReader | None, limit: int) -> tuple[bytes, bool]:
    """Read *stream* to EOF, keeping at most *limit* bytes."""
    if stream is None:
        return b"", False
    kept = bytearray()
    truncated = False
    while True:
        block = await stream.read(65536)
        if not block:
            break
        room = limit - len(kept)
        if room > 0:
            kept.extend(block[:room])
        if len(block) > room:
            truncated = True
    return bytes(kept), truncated


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, AttributeError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass
