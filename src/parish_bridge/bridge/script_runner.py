import asyncio
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence


class ScriptRunError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


def resolve_interpreter(interpreter: str) -> Path:
    if os.sep in interpreter or (os.altsep and os.altsep in interpreter):
        candidate = Path(interpreter)
        if candidate.exists():
            return candidate
        raise ScriptRunError("SPAWN_FAILED", f"Interpreter does not exist: {interpreter}")

    in_path = shutil.which(interpreter)
    if in_path:
        return Path(in_path)

    raise ScriptRunError(
        "SPAWN_FAILED",
        f"Could not find interpreter '{interpreter}' on PATH. Set PARISH_BRIDGE_INTERPRETER.",
    )


def interpreter_version(interpreter: str) -> str:
    executable = resolve_interpreter(interpreter)
    try:
        proc = subprocess.run([str(executable), "--version"], capture_output=True, text=True, timeout=10)
    except Exception as exc:
        raise ScriptRunError("SPAWN_FAILED", str(exc)) from exc
    if proc.returncode != 0:
        raise ScriptRunError("EXEC_FAILED", (proc.stderr or proc.stdout or "unknown error").strip())
    first_line = (proc.stdout or proc.stderr or "").splitlines()
    return first_line[0].strip() if first_line else "unknown"


async def _terminate(proc: "asyncio.subprocess.Process") -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def run_script(
    interpreter: str,
    script_path: Path,
    args: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    timeout_seconds: Optional[float] = None,
) -> ProcessResult:
    """Run ``interpreter script_path *args`` and capture both output streams.

    A non-zero exit status is not an error here; callers inspect
    ``ProcessResult.returncode``. Only failing to launch the child
    (``SPAWN_FAILED``) or an elapsed timeout (``TIMEOUT``) raise.
    Cancelling the awaiting task kills the child before re-raising.
    """
    executable = resolve_interpreter(interpreter)
    cmd = [str(executable), str(script_path), *args]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
        )
    except OSError as exc:
        raise ScriptRunError("SPAWN_FAILED", f"Failed to execute {executable.name} process: {exc}") from exc

    try:
        if timeout_seconds is None:
            stdout, stderr = await proc.communicate()
        else:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout_seconds)
    except asyncio.TimeoutError as exc:
        await _terminate(proc)
        raise ScriptRunError("TIMEOUT", f"{script_path.name} timed out after {timeout_seconds}s") from exc
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    return ProcessResult(returncode=proc.returncode, stdout=stdout or b"", stderr=stderr or b"")
