import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from parish_bridge.bridge.config import BridgeConfig
from parish_bridge.bridge.script_runner import ScriptRunError, run_script


class BridgeOperationError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


STRING = "string"
OPTIONAL_STRING = "optional_string"
INT32 = "int32"

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


@dataclass(frozen=True)
class Param:
    name: str
    kind: str = STRING

    @property
    def optional(self) -> bool:
        return self.kind == OPTIONAL_STRING


@dataclass(frozen=True)
class Operation:
    name: str
    script: str
    failure_prefix: str
    params: Tuple[Param, ...] = ()


def _op(name: str, script: str, failure_prefix: str, *params: Param) -> Operation:
    return Operation(name=name, script=script, failure_prefix=failure_prefix, params=tuple(params))


_RECORD_FIELDS = (
    Param("child_name"),
    Param("father_name", OPTIONAL_STRING),
    Param("mother_name", OPTIONAL_STRING),
    Param("birth_date"),
    Param("birth_place"),
    Param("baptism_date"),
    Param("priest_name"),
)

_STAFF_FIELDS = (
    Param("name"),
    Param("title", OPTIONAL_STRING),
    Param("role", OPTIONAL_STRING),
)

OPERATIONS: Dict[str, Operation] = {
    op.name: op
    for op in (
        _op("login", "validateUser.js", "Authentication failed", Param("username"), Param("password")),
        _op("create_record", "createRecord.js", "Failed to create record", *_RECORD_FIELDS, Param("created_by", INT32)),
        _op("list_records", "getRecords.js", "Failed to fetch records"),
        _op(
            "update_record",
            "updateRecord.js",
            "Failed to update record",
            Param("record_id", INT32),
            *_RECORD_FIELDS,
            Param("updated_by", INT32),
        ),
        _op("delete_record", "deleteRecord.js", "Failed to delete record", Param("record_id", INT32), Param("deleted_by", INT32)),
        _op("create_staff", "createParishStaff.js", "Failed to create parish staff", *_STAFF_FIELDS, Param("created_by", INT32)),
        _op("list_staff", "getParishStaff.js", "Failed to fetch parish staff"),
        _op(
            "update_staff",
            "updateParishStaff.js",
            "Failed to update parish staff",
            Param("staff_id", INT32),
            *_STAFF_FIELDS,
            Param("updated_by", INT32),
        ),
        _op("delete_staff", "deleteParishStaff.js", "Failed to delete parish staff", Param("staff_id", INT32), Param("deleted_by", INT32)),
        _op("list_audit_logs", "getAuditLogs.js", "Failed to fetch audit logs"),
        _op("list_users", "getAllUsers.js", "Failed to fetch users"),
        _op("backup_database", "backupDatabase.js", "Backup failed", Param("backup_path"), Param("user_id", INT32)),
        _op("import_database", "importDatabase.js", "Import failed", Param("backup_path"), Param("user_id", INT32)),
    )
}

# Command names used by earlier desktop builds.
ALIASES: Dict[str, str] = {
    "login_user": "login",
    "create_baptism_record": "create_record",
    "get_baptism_records": "list_records",
    "update_baptism_record": "update_record",
    "delete_baptism_record": "delete_record",
    "create_parish_staff": "create_staff",
    "get_parish_staff": "list_staff",
    "update_parish_staff": "update_staff",
    "delete_parish_staff": "delete_staff",
    "get_audit_logs": "list_audit_logs",
    "get_all_users": "list_users",
}

ACTION_METHODS = list(OPERATIONS)

Arguments = Union[Sequence[Any], Mapping[str, Any]]


def lookup(name: str) -> Operation:
    operation = OPERATIONS.get(ALIASES.get(name, name))
    if operation is None:
        raise BridgeOperationError("INVALID_INPUT", f"Unknown operation: {name}")
    return operation


def _encode_value(operation: Operation, param: Param, value: Any) -> str:
    if param.kind == INT32:
        if isinstance(value, bool) or not isinstance(value, int):
            raise BridgeOperationError(
                "INVALID_INPUT",
                f"{operation.name}: '{param.name}' must be an integer, got {type(value).__name__}",
            )
        if not INT32_MIN <= value <= INT32_MAX:
            raise BridgeOperationError("INVALID_INPUT", f"{operation.name}: '{param.name}' is out of 32-bit range: {value}")
        return str(value)
    if value is None:
        if param.optional:
            return ""
        raise BridgeOperationError("INVALID_INPUT", f"{operation.name}: '{param.name}' is required")
    if not isinstance(value, str):
        raise BridgeOperationError(
            "INVALID_INPUT",
            f"{operation.name}: '{param.name}' must be a string, got {type(value).__name__}",
        )
    return value


def encode_arguments(operation: Operation, args: Optional[Arguments] = None) -> List[str]:
    """Flatten caller arguments into the ordered argv the script expects.

    ``args`` is either a sequence matching ``operation.params`` one to one,
    or a mapping keyed by parameter name in which optional strings may be
    left out. Absent optionals become ``""`` so the argument count never
    varies.
    """
    if args is None:
        args = ()
    if isinstance(args, Mapping):
        unexpected = sorted(set(args) - {p.name for p in operation.params})
        if unexpected:
            raise BridgeOperationError(
                "INVALID_INPUT", f"{operation.name}: unexpected parameter(s): {', '.join(unexpected)}"
            )
        values = []
        for param in operation.params:
            if param.name not in args and not param.optional:
                raise BridgeOperationError("INVALID_INPUT", f"Missing required parameter: '{param.name}'")
            values.append(args.get(param.name))
    elif isinstance(args, (str, bytes)) or not isinstance(args, Sequence):
        raise BridgeOperationError(
            "INVALID_INPUT",
            f"{operation.name}: arguments must be a sequence or mapping, got {type(args).__name__}",
        )
    else:
        values = list(args)
        if len(values) != len(operation.params):
            raise BridgeOperationError(
                "INVALID_INPUT",
                f"{operation.name} expects {len(operation.params)} argument(s), got {len(values)}",
            )
    return [_encode_value(operation, param, value) for param, value in zip(operation.params, values)]


class CommandBridge:
    def __init__(self, config: Optional[BridgeConfig] = None, *, logger: Optional[logging.Logger] = None):
        self.config = config or BridgeConfig.from_env()
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

    def script_path(self, operation: Union[str, Operation]) -> Path:
        if isinstance(operation, str):
            operation = lookup(operation)
        return self.config.scripts_dir / operation.script

    def _worker_slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.config.max_workers)
            self._semaphore_loop = loop
        return self._semaphore

    async def invoke(
        self,
        operation: str,
        args: Optional[Arguments] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        op = lookup(operation)
        argv = encode_arguments(op, args)
        script = self.script_path(op)
        self._logger.debug(
            "[%s] launching %s (cwd: %s)",
            op.name,
            script,
            os.getcwd(),
            extra={"operation": op.name, "script": str(script), "cwd": os.getcwd()},
        )

        async with self._worker_slots():
            try:
                result = await run_script(self.config.interpreter, script, argv, timeout_seconds=timeout_seconds)
            except ScriptRunError as exc:
                self._logger.error(
                    "[%s] %s: %s", op.name, exc.code, exc.message, extra={"operation": op.name, "script": str(script)}
                )
                raise BridgeOperationError(exc.code, exc.message) from exc

        self._logger.debug(
            "[%s] exit %s (stdout: %d bytes, stderr: %d bytes)",
            op.name,
            result.returncode,
            len(result.stdout),
            len(result.stderr),
            extra={
                "operation": op.name,
                "script": str(script),
                "returncode": result.returncode,
                "stdout_bytes": len(result.stdout),
                "stderr_bytes": len(result.stderr),
            },
        )
        if result.succeeded:
            return result.stdout_text.strip()

        stderr = result.stderr_text.strip()
        self._logger.warning(
            "[%s] script failed with exit %s: %s",
            op.name,
            result.returncode,
            stderr,
            extra={"operation": op.name, "script": str(script), "returncode": result.returncode},
        )
        raise BridgeOperationError("EXEC_FAILED", f"{op.failure_prefix}: {stderr}")

    async def invoke_many(
        self, requests: Iterable[Tuple[str, Optional[Arguments]]]
    ) -> List[Union[str, BridgeOperationError]]:
        """Run several operations concurrently; results line up with ``requests``.

        Operation failures are returned in place rather than raised, so one
        failing step does not hide the others.
        """
        results = await asyncio.gather(
            *(self.invoke(name, args) for name, args in requests),
            return_exceptions=True,
        )
        for item in results:
            if isinstance(item, BaseException) and not isinstance(item, BridgeOperationError):
                raise item
        return list(results)


def execute(method: str, params: Optional[Arguments] = None, config: Optional[BridgeConfig] = None) -> str:
    return asyncio.run(CommandBridge(config).invoke(method, params))
