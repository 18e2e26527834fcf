"""Validated, time-bounded execution of canonical tool calls."""

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

from agentcore.clients.signals import AbortSignal
from agentcore.errors import ToolTimeoutError, ToolValidationError, is_critical_error
from agentcore.models.execution import ExecutionContext, ExecutionRecord, ExecutionStats, SecurityConfig
from agentcore.models.tools import ParameterSchema, ToolCall, ToolDefinition, ToolResult
from agentcore.tools.registry import ToolRegistry
from agentcore.utils.logging import get_logger
from agentcore.utils.resilience import with_timeout

logger = get_logger(__name__)

VALIDATION_PREFIX = "Validation failed: "
PATH_ARGUMENTS = ("path", "file_path", "filename", "directory")
TRAVERSAL_SEQUENCES = ("..", "./", ".\\")
WINDOWS_ABSOLUTE = re.compile(r"^[A-Za-z]:\\")
SHELL_TOOL = "execute_shell"

TYPE_CHECKS: dict[str, Any] = {
    "string": lambda value: isinstance(value, str),
    "number": lambda value: isinstance(value, int | float) and not isinstance(value, bool),
    "integer": lambda value: isinstance(value, int) and not isinstance(value, bool),
    "boolean": lambda value: isinstance(value, bool),
    "array": lambda value: isinstance(value, list),
    "object": lambda value: isinstance(value, dict),
    "null": lambda value: value is None,
}


def is_validation_failure(result: ToolResult) -> bool:
    """Whether a result was rejected before the tool ran."""
    return result.is_error and (result.error or "").startswith(VALIDATION_PREFIX)


def is_retryable_failure(result: ToolResult) -> bool:
    """Whether re-running a failed call could plausibly succeed."""
    return result.is_error and not is_validation_failure(result) and not is_critical_error(result.error)


def _within(path: str, base: str) -> bool:
    base = base.rstrip("/\\")
    return path == base or path.startswith(base + "/") or path.startswith(base + "\\")


def validate_path(path: Any, security_config: SecurityConfig) -> None:
    """Check a path argument against the security policy.

    Raises:
        ToolValidationError: On traversal, relative paths, blocked or non-allowed locations
    """
    if not isinstance(path, str):
        raise ToolValidationError(f"Path must be a string, got {type(path).__name__}")
    if any(sequence in path for sequence in TRAVERSAL_SEQUENCES):
        raise ToolValidationError("Path contains directory traversal sequences")
    if not path.startswith("/") and not WINDOWS_ABSOLUTE.match(path):
        raise ToolValidationError("Path must be absolute")
    for blocked in security_config.blocked_paths or []:
        if _within(path, blocked):
            raise ToolValidationError(f"Access to path '{blocked}' is blocked")
    if security_config.allowed_paths and not any(_within(path, allowed) for allowed in security_config.allowed_paths):
        raise ToolValidationError("Path is not in allowed directories")


def validate_parameter(name: str, value: Any, schema: ParameterSchema) -> None:
    """Check one argument against its declared schema.

    Raises:
        ToolValidationError: On type, range, length, pattern or enum mismatch
    """
    if schema.type is not None:
        types = schema.type if isinstance(schema.type, list) else [schema.type]
        if not any(TYPE_CHECKS[expected](value) for expected in types):
            raise ToolValidationError(
                f"Parameter '{name}': Expected {' or '.join(types)}, got {type(value).__name__}"
            )

    if isinstance(value, int | float) and not isinstance(value, bool):
        if schema.minimum is not None and value < schema.minimum:
            raise ToolValidationError(f"Parameter '{name}': Value {value} is below minimum {schema.minimum}")
        if schema.maximum is not None and value > schema.maximum:
            raise ToolValidationError(f"Parameter '{name}': Value {value} is above maximum {schema.maximum}")

    if isinstance(value, str):
        if schema.min_length is not None and len(value) < schema.min_length:
            raise ToolValidationError(f"Parameter '{name}': Length {len(value)} is below {schema.min_length}")
        if schema.max_length is not None and len(value) > schema.max_length:
            raise ToolValidationError(f"Parameter '{name}': Length {len(value)} is above {schema.max_length}")
        if schema.pattern is not None:
            try:
                matched = re.search(schema.pattern, value)
            except re.error as e:
                raise ToolValidationError(f"Parameter '{name}': Unsupported pattern {schema.pattern}: {e}") from e
            if not matched:
                raise ToolValidationError(f"Parameter '{name}': Value does not match pattern {schema.pattern}")

    if schema.enum is not None and value not in schema.enum:
        allowed = ", ".join(str(option) for option in schema.enum)
        raise ToolValidationError(f"Parameter '{name}': Value must be one of: {allowed}")


def validate_arguments(arguments: dict[str, Any], definition: ToolDefinition) -> None:
    """Check required fields and every declared argument.

    Raises:
        ToolValidationError: On the first problem found
    """
    for required in definition.parameters.required:
        if required not in arguments:
            raise ToolValidationError(f"Missing required parameter: {required}", tool_name=definition.name)
    for name, value in arguments.items():
        schema = definition.parameters.properties.get(name)
        if schema is not None:
            validate_parameter(name, value, schema)


class ToolExecutionEngine:
    """Validates tool calls against a security policy and runs them with a deadline."""

    def __init__(self, registry: ToolRegistry):
        """Initialize engine.

        Args:
            registry: Source of executable tools
        """
        self.registry = registry
        self._history: dict[str, list[ExecutionRecord]] = {}

    async def execute_tool_call(self, call: ToolCall, context: ExecutionContext) -> ToolResult:
        """Validate and execute one call.

        Args:
            call: Canonical tool call
            context: Session, security policy and abort signal

        Returns:
            Exactly one result carrying the call's id; exceptions never escape
        """
        start = time.perf_counter()
        try:
            self.validate_tool_call(call, context.security_config)
        except ToolValidationError as e:
            result = ToolResult.failure(call, f"{VALIDATION_PREFIX}{e}")
            self._log_execution(call, context, result, start)
            return result
        except Exception as e:
            logger.exception(f"Validation of {call.name} raised")
            result = ToolResult.failure(call, f"{VALIDATION_PREFIX}{e or type(e).__name__}")
            self._log_execution(call, context, result, start)
            return result

        tool = self.registry.get_tool(call.name)
        timeout = context.security_config.max_execution_time
        signal = context.abort_signal.child() if context.abort_signal is not None else AbortSignal()

        try:
            output = await with_timeout(lambda: tool.execute(dict(call.arguments), signal), timeout, signal)
            result = output.model_copy(update={"id": call.id, "name": call.name})
        except ToolTimeoutError:
            result = ToolResult.failure(call, f"Tool execution timed out after {timeout}s")
        except Exception as e:
            logger.exception(f"Tool {call.name} raised")
            result = ToolResult.failure(call, str(e) or type(e).__name__)

        self._log_execution(call, context, result, start)
        return result

    async def execute_tool_calls(
        self,
        calls: list[ToolCall],
        context: ExecutionContext,
        parallel: bool = False,
        stop_on_failure: bool = False,
        executor: Callable[[ToolCall], Awaitable[ToolResult]] | None = None,
    ) -> list[ToolResult]:
        """Execute a batch of calls.

        Args:
            calls: Calls in model order
            context: Shared execution context
            parallel: Dispatch concurrently; results still follow input order
            stop_on_failure: In sequential mode, stop after any failure, not only critical ones
            executor: Runs one call; defaults to execute_tool_call with the batch context

        Returns:
            One result per executed call, in input order
        """
        run = executor if executor is not None else partial(self.execute_tool_call, context=context)
        if parallel:
            return list(await asyncio.gather(*(run(call) for call in calls)))

        results = []
        for call in calls:
            result = await run(call)
            results.append(result)
            if result.is_error and is_critical_error(result.error):
                logger.warning(f"Critical error from {call.name}, skipping {len(calls) - len(results)} calls")
                break
            if result.is_error and stop_on_failure:
                break
        return results

    def validate_tool_call(self, call: ToolCall, security_config: SecurityConfig) -> None:
        """Run every pre-execution check.

        Raises:
            ToolValidationError: On the first failed check
        """
        tool = self.registry.get_tool(call.name)
        if tool is None:
            raise ToolValidationError(f"Tool '{call.name}' not found", tool_name=call.name)

        name = call.name.lower()
        if (name == SHELL_TOOL or "shell" in name) and not security_config.allow_shell_execution:
            raise ToolValidationError("Shell execution is not allowed", tool_name=call.name)
        is_file_tool = "file" in name
        if is_file_tool and not security_config.allow_file_operations:
            raise ToolValidationError("File operations are not allowed", tool_name=call.name)
        if ("http" in name or "fetch" in name) and not security_config.allow_network_access:
            raise ToolValidationError("Network access is not allowed", tool_name=call.name)

        for key in PATH_ARGUMENTS:
            if key in call.arguments:
                validate_path(call.arguments[key], security_config)

        content = call.arguments.get("content")
        # lone surrogates survive json.loads
        size = len(content.encode("utf-8", "surrogatepass")) if isinstance(content, str) else 0
        if is_file_tool and size > security_config.max_file_size:
            raise ToolValidationError(
                f"Content exceeds maximum file size of {security_config.max_file_size} bytes", tool_name=call.name
            )

        validate_arguments(dict(call.arguments), tool.schema)

    def get_execution_history(self, session_id: str) -> list[ExecutionRecord]:
        """Get the audit log of a session."""
        return list(self._history.get(session_id, []))

    def clear_execution_history(self, session_id: str) -> None:
        """Drop the audit log of a session."""
        self._history.pop(session_id, None)

    def get_execution_stats(self, session_id: str) -> ExecutionStats:
        """Derive statistics from a session's audit log."""
        history = self._history.get(session_id, [])
        if not history:
            return ExecutionStats()
        successful = sum(1 for record in history if record.success)
        return ExecutionStats(
            total_executions=len(history),
            successful_executions=successful,
            failed_executions=len(history) - successful,
            average_execution_time_ms=sum(record.duration_ms for record in history) / len(history),
        )

    def _log_execution(self, call: ToolCall, context: ExecutionContext, result: ToolResult, start: float) -> None:
        duration_ms = (time.perf_counter() - start) * 1000
        self._history.setdefault(context.session_id, []).append(
            ExecutionRecord(
                call_id=call.id,
                tool_name=call.name,
                session_id=context.session_id,
                success=not result.is_error,
                duration_ms=duration_ms,
                error=result.error,
            )
        )
        status = "FAILED" if result.is_error else "SUCCESS"
        logger.info(f"Tool executed: {call.name} ({duration_ms:.0f}ms) - {status}")
        if result.is_error:
            logger.warning(f"Tool {call.name} error: {result.error}")
