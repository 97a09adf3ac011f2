import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import typer

from parish_bridge import __version__
from parish_bridge.bridge.client import BridgeClient, BridgeClientError
from parish_bridge.bridge.config import BridgeConfig
from parish_bridge.bridge.operations import (
    ACTION_METHODS,
    ALIASES,
    OPERATIONS,
    BridgeOperationError,
    CommandBridge,
    Arguments,
)
from parish_bridge.bridge.protocol import ERROR_CODES, PROTOCOL_VERSION
from parish_bridge.bridge.script_runner import ScriptRunError, interpreter_version
from parish_bridge.bridge.server import run_bridge_server

app = typer.Typer(add_completion=False, help="Command bridge for the parish records desktop app")
bridge_app = typer.Typer(add_completion=False, help="Bridge lifecycle")
auth_app = typer.Typer(add_completion=False, help="Authentication commands")
record_app = typer.Typer(add_completion=False, help="Baptismal record commands")
staff_app = typer.Typer(add_completion=False, help="Parish staff commands")
audit_app = typer.Typer(add_completion=False, help="Audit log commands")
user_app = typer.Typer(add_completion=False, help="User commands")
db_app = typer.Typer(add_completion=False, help="Database backup and import")

app.add_typer(bridge_app, name="bridge")
app.add_typer(auth_app, name="auth")
app.add_typer(record_app, name="record")
app.add_typer(staff_app, name="staff")
app.add_typer(audit_app, name="audit")
app.add_typer(user_app, name="user")
app.add_typer(db_app, name="db")

_overrides: Dict[str, Any] = {}
_via_bridge = {"enabled": False}


@app.callback()
def configure(
    scripts_dir: Optional[Path] = typer.Option(None, "--scripts-dir", help="Directory holding the record scripts"),
    interpreter: Optional[str] = typer.Option(None, "--interpreter", help="Interpreter used to run the scripts"),
    max_workers: Optional[int] = typer.Option(None, "--max-workers", min=1),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Trace script launches on stderr"),
    via_bridge: bool = typer.Option(False, "--via-bridge", help="Send record commands to the running bridge"),
) -> None:
    _overrides.update(scripts_dir=scripts_dir, interpreter=interpreter, max_workers=max_workers)
    _via_bridge["enabled"] = via_bridge
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _print(payload: Dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _ok(command: str, data: Dict[str, Any]) -> None:
    data.setdefault("warnings", [])
    _print({"ok": True, "protocolVersion": PROTOCOL_VERSION, "command": command, "data": data})


def _fail(command: str, code: str, message: str, retryable: bool = False) -> NoReturn:
    _print(
        {
            "ok": False,
            "protocolVersion": PROTOCOL_VERSION,
            "command": command,
            "error": {"code": code, "message": message, "retryable": retryable},
        }
    )
    raise SystemExit(ERROR_CODES.get(code, ERROR_CODES["ERROR"]))


def _config(command: str = "config") -> BridgeConfig:
    try:
        return BridgeConfig.from_env().with_overrides(**_overrides)
    except ValueError as exc:
        _fail(command, "INVALID_INPUT", str(exc))


def _decode_payload(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return payload


def _call_operation(command: str, operation: str, args: Arguments) -> None:
    try:
        if _via_bridge["enabled"]:
            payload = _bridge_client().call(operation, args)
        else:
            payload = asyncio.run(CommandBridge(_config(command)).invoke(operation, args))
    except BridgeClientError as exc:
        _fail(command, exc.code, exc.message, retryable=exc.retryable)
    except BridgeOperationError as exc:
        _fail(command, exc.code, exc.message)
    _ok(command, {"operation": operation, "result": _decode_payload(payload)})


def _bridge_state_dir() -> Path:
    root = Path(os.getenv("LOCALAPPDATA", Path.home()))
    state_dir = root / "parish-bridge"
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def _bridge_pid_file() -> Path:
    return _bridge_state_dir() / "bridge.pid"


def _bridge_url_file() -> Path:
    return _bridge_state_dir() / "bridge.url"


def _bridge_client() -> BridgeClient:
    from_env = os.getenv("PARISH_BRIDGE_URL")
    if from_env:
        return BridgeClient(from_env)
    url_file = _bridge_url_file()
    if url_file.exists():
        return BridgeClient(url_file.read_text(encoding="utf-8").strip())
    return BridgeClient(_config().url)


def _resolve_plan_vars(value: Any, variables: Dict[str, Any]) -> Any:
    if isinstance(value, str):
        for k, v in variables.items():
            if value == f"${{{k}}}":
                return v
        out = value
        for k, v in variables.items():
            out = out.replace(f"${{{k}}}", str(v))
        return out
    if isinstance(value, list):
        return [_resolve_plan_vars(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_plan_vars(v, variables) for k, v in value.items()}
    return value


@bridge_app.command("serve")
def bridge_serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(41750, "--port"),
) -> None:
    run_bridge_server(host, port, _config("bridge.serve"))


@bridge_app.command("start")
def bridge_start(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(41750, "--port"),
) -> None:
    pid_file = _bridge_pid_file()
    if pid_file.exists():
        try:
            pid = int(pid_file.read_text(encoding="utf-8").strip())
            os.kill(pid, 0)
            _ok("bridge.start", {"status": "already-running", "pid": pid, "host": host, "port": port})
            return
        except (OSError, ValueError):
            pid_file.unlink(missing_ok=True)

    config = _config("bridge.start")
    env = os.environ.copy()
    env["PARISH_BRIDGE_INTERPRETER"] = config.interpreter
    env["PARISH_BRIDGE_SCRIPTS_DIR"] = str(config.scripts_dir.resolve())
    env["PARISH_BRIDGE_MAX_WORKERS"] = str(config.max_workers)

    creationflags = 0
    if os.name == "nt":
        creationflags = subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS
    process = subprocess.Popen(
        [sys.executable, "-m", "parish_bridge", "bridge", "serve", "--host", host, "--port", str(port)],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
        creationflags=creationflags,
    )
    pid_file.write_text(str(process.pid), encoding="utf-8")
    url = f"http://{host}:{port}"
    _bridge_url_file().write_text(url, encoding="utf-8")
    try:
        BridgeClient(url).wait_until_healthy()
    except BridgeClientError as exc:
        _fail("bridge.start", exc.code, f"Bridge process started but health check failed: {exc.message}", exc.retryable)
    _ok("bridge.start", {"status": "started", "pid": process.pid, "host": host, "port": port})


@bridge_app.command("stop")
def bridge_stop() -> None:
    pid_file = _bridge_pid_file()
    if not pid_file.exists():
        _ok("bridge.stop", {"status": "not-running"})
        return
    pid = int(pid_file.read_text(encoding="utf-8").strip())
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        logging.getLogger(__name__).debug("Bridge process %s was already gone", pid)
    pid_file.unlink(missing_ok=True)
    _bridge_url_file().unlink(missing_ok=True)
    _ok("bridge.stop", {"status": "stopped", "pid": pid})


@bridge_app.command("status")
def bridge_status() -> None:
    client = _bridge_client()
    try:
        health = client.health()
        _ok("bridge.status", {"running": True, "health": health, "url": client.url})
    except BridgeClientError as exc:
        _fail("bridge.status", exc.code, exc.message, retryable=exc.retryable)


@app.command("actions")
def actions() -> None:
    signatures = {
        name: [{"name": p.name, "kind": p.kind} for p in op.params] for name, op in OPERATIONS.items()
    }
    _ok("actions", {"actions": ACTION_METHODS, "aliases": ALIASES, "signatures": signatures})


@app.command("version")
def version() -> None:
    _ok("version", {"bridgeVersion": __version__})


@app.command("doctor")
def doctor() -> None:
    config = _config("doctor")
    checks: List[Dict[str, Any]] = []
    healthy = True
    try:
        checks.append({"name": "interpreter", "ok": True, "value": interpreter_version(config.interpreter)})
    except ScriptRunError as exc:
        healthy = False
        checks.append({"name": "interpreter", "ok": False, "error": exc.message})

    bridge = CommandBridge(config)
    for name in ACTION_METHODS:
        script = bridge.script_path(name)
        present = script.is_file()
        healthy = healthy and present
        entry: Dict[str, Any] = {"name": f"script.{name}", "ok": present, "value": str(script)}
        if not present:
            entry["error"] = f"Script not found: {script}"
        checks.append(entry)

    _ok("doctor", {"healthy": healthy, "checks": checks})
    if not healthy:
        raise SystemExit(ERROR_CODES["ERROR"])


@app.command("run-plan")
def run_plan(
    plan_file: Path,
    dry_run: bool = typer.Option(False, "--dry-run"),
) -> None:
    if not plan_file.exists():
        _fail("run-plan", "NOT_FOUND", f"Plan file not found: {plan_file}")
    try:
        plan = json.loads(plan_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        _fail("run-plan", "INVALID_INPUT", f"Invalid JSON plan: {exc}")
    if not isinstance(plan, dict):
        _fail("run-plan", "INVALID_INPUT", "Plan must be a JSON object")
    steps = plan.get("steps")
    if not isinstance(steps, list) or not steps:
        _fail("run-plan", "INVALID_INPUT", "Plan must include non-empty 'steps' array")

    variables = dict(plan.get("variables") or {})
    resolved_steps: List[Dict[str, Any]] = []
    for idx, raw in enumerate(steps):
        if not isinstance(raw, dict):
            _fail("run-plan", "INVALID_INPUT", f"Step {idx} must be an object")
        method = raw.get("method")
        if not isinstance(method, str) or not method.strip():
            _fail("run-plan", "INVALID_INPUT", f"Step {idx} missing method")
        params = raw.get("params", {})
        if not isinstance(params, (dict, list)):
            _fail("run-plan", "INVALID_INPUT", f"Step {idx} params must be an object or array")
        resolved_steps.append({"method": method, "params": _resolve_plan_vars(params, variables)})

    if dry_run:
        _ok("run-plan", {"dryRun": True, "steps": resolved_steps})
        return

    bridge = CommandBridge(_config("run-plan"))
    outcomes = asyncio.run(bridge.invoke_many((step["method"], step["params"]) for step in resolved_steps))

    results: List[Dict[str, Any]] = []
    first_error: Optional[BridgeOperationError] = None
    for idx, (step, outcome) in enumerate(zip(resolved_steps, outcomes)):
        if isinstance(outcome, BridgeOperationError):
            first_error = first_error or outcome
            results.append(
                {
                    "index": idx,
                    "ok": False,
                    "method": step["method"],
                    "error": {"code": outcome.code, "message": outcome.message},
                }
            )
        else:
            results.append({"index": idx, "ok": True, "method": step["method"], "result": _decode_payload(outcome)})

    if first_error is not None:
        _print(
            {
                "ok": False,
                "protocolVersion": PROTOCOL_VERSION,
                "command": "run-plan",
                "data": {"executed": len(results), "results": results},
            }
        )
        raise SystemExit(ERROR_CODES.get(first_error.code, ERROR_CODES["ERROR"]))
    _ok("run-plan", {"executed": len(results), "results": results})


@auth_app.command("login")
def auth_login(
    username: str,
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
) -> None:
    _call_operation("auth.login", "login", {"username": username, "password": password})


@record_app.command("create")
def record_create(
    child_name: str,
    birth_date: str,
    birth_place: str,
    baptism_date: str,
    priest_name: str,
    created_by: int,
    father_name: Optional[str] = typer.Option(None, "--father-name"),
    mother_name: Optional[str] = typer.Option(None, "--mother-name"),
) -> None:
    _call_operation(
        "record.create",
        "create_record",
        {
            "child_name": child_name,
            "father_name": father_name,
            "mother_name": mother_name,
            "birth_date": birth_date,
            "birth_place": birth_place,
            "baptism_date": baptism_date,
            "priest_name": priest_name,
            "created_by": created_by,
        },
    )


@record_app.command("list")
def record_list() -> None:
    _call_operation("record.list", "list_records", {})


@record_app.command("update")
def record_update(
    record_id: int,
    child_name: str,
    birth_date: str,
    birth_place: str,
    baptism_date: str,
    priest_name: str,
    updated_by: int,
    father_name: Optional[str] = typer.Option(None, "--father-name"),
    mother_name: Optional[str] = typer.Option(None, "--mother-name"),
) -> None:
    _call_operation(
        "record.update",
        "update_record",
        {
            "record_id": record_id,
            "child_name": child_name,
            "father_name": father_name,
            "mother_name": mother_name,
            "birth_date": birth_date,
            "birth_place": birth_place,
            "baptism_date": baptism_date,
            "priest_name": priest_name,
            "updated_by": updated_by,
        },
    )


@record_app.command("delete")
def record_delete(record_id: int, deleted_by: int) -> None:
    _call_operation("record.delete", "delete_record", {"record_id": record_id, "deleted_by": deleted_by})


@staff_app.command("create")
def staff_create(
    name: str,
    created_by: int,
    title: Optional[str] = typer.Option(None, "--title"),
    role: Optional[str] = typer.Option(None, "--role"),
) -> None:
    _call_operation(
        "staff.create",
        "create_staff",
        {"name": name, "title": title, "role": role, "created_by": created_by},
    )


@staff_app.command("list")
def staff_list() -> None:
    _call_operation("staff.list", "list_staff", {})


@staff_app.command("update")
def staff_update(
    staff_id: int,
    name: str,
    updated_by: int,
    title: Optional[str] = typer.Option(None, "--title"),
    role: Optional[str] = typer.Option(None, "--role"),
) -> None:
    _call_operation(
        "staff.update",
        "update_staff",
        {"staff_id": staff_id, "name": name, "title": title, "role": role, "updated_by": updated_by},
    )


@staff_app.command("delete")
def staff_delete(staff_id: int, deleted_by: int) -> None:
    _call_operation("staff.delete", "delete_staff", {"staff_id": staff_id, "deleted_by": deleted_by})


@audit_app.command("list")
def audit_list() -> None:
    _call_operation("audit.list", "list_audit_logs", {})


@user_app.command("list")
def user_list() -> None:
    _call_operation("user.list", "list_users", {})


@db_app.command("backup")
def db_backup(backup_path: Path, user_id: int) -> None:
    _call_operation("db.backup", "backup_database", {"backup_path": str(backup_path), "user_id": user_id})


@db_app.command("import")
def db_import(backup_path: Path, user_id: int) -> None:
    _call_operation("db.import", "import_database", {"backup_path": str(backup_path), "user_id": user_id})


def main() -> None:
    app()


if __name__ == "__main__":
    main()
