"""Best-effort recovery of function calls from malformed model output."""

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from agentcore.models.tools import ToolCall
from agentcore.utils.logging import get_logger

logger = get_logger(__name__)

UNQUOTED_KEY = re.compile(r"([{,]\s*)([a-zA-Z_]\w*)(\s*):")
TRAILING_COMMA = re.compile(r",(\s*[}\]])")
MISSING_COMMA_AFTER_VALUE = re.compile(r'(":\s*(?:"[^"]*"|\{[^}]*\}|[^,}\]]*?))\s+("[\w_]+"\s*:)')
MISSING_COMMA_AFTER_STRING = re.compile(r'(")\s+("[\w_]+"\s*:)')
BARE_NAME_PROPERTY = re.compile(r'^"name":\s*"[^"]*"')
DOUBLE_COMMA = re.compile(r",\s*,")
CODE_BLOCK = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
GREEDY_OBJECT = re.compile(r"\{.*\}")

CALL_SHAPE_PATTERNS = (
    re.compile(r"```json\s*(\{.*?\})\s*```", re.DOTALL),
    re.compile(r'\{"function_call":\s*\{.*?\}\s*\}'),
    re.compile(r'\{"name":\s*"[^"]+",\s*"arguments":\s*\{.*?\}\s*\}'),
)

INFORMAL_CALL_PATTERNS = (
    re.compile(r"Execute tool:\s*(\w+)\s*with arguments:\s*(\{[^}]*\})", re.IGNORECASE),
    re.compile(
        r"(?:function[_\s]*)?(?:call|name)[:\s]*[\"']?(\w+)[\"']?\s*(?:arguments|args|parameters)[:\s]*(\{[^}]*\})",
        re.IGNORECASE,
    ),
)

MARKDOWN_JSON_BLOCK = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)
NESTED_OBJECT = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}")
KEY_VALUE_PAIR = re.compile(r"(\w+):\s*([^,\n]+)")
RESULT_OBJECT = re.compile(r"result:\s*(\{[\s\S]*?\})", re.IGNORECASE)
NUMBER = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")


@dataclass
class RepairResult:
    """Outcome of a repair run; never raised, always returned."""

    success: bool
    function_calls: list[ToolCall] = field(default_factory=list)
    data: Any = None
    repaired_text: str | None = None
    attempts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def unwrap_code_block(text: str) -> str:
    """Return the object inside a fenced code block, if any."""
    match = CODE_BLOCK.search(text)
    return match.group(1) if match else text


def extract_json_from_text(text: str) -> str:
    """Cut the widest ``{...}`` span out of surrounding prose."""
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return text
    match = GREEDY_OBJECT.search(text)
    return match.group(0) if match else text


def quote_unquoted_keys(text: str) -> str:
    return UNQUOTED_KEY.sub(r'\1"\2"\3:', text)


def strip_trailing_commas(text: str) -> str:
    return TRAILING_COMMA.sub(r"\1", text)


def normalize_single_quotes(text: str) -> str:
    return text.replace("'", '"')


def insert_missing_commas(text: str) -> str:
    text = MISSING_COMMA_AFTER_VALUE.sub(r"\1,\2", text)
    return MISSING_COMMA_AFTER_STRING.sub(r"\1,\2", text)


def wrap_bare_properties(text: str) -> str:
    """Wrap a brace-less ``"name": ...`` fragment in an object."""
    stripped = text.strip()
    if (
        not stripped.startswith("{")
        and '"name"' in stripped
        and '{"' not in stripped
        and BARE_NAME_PROPERTY.match(stripped)
    ):
        return "{" + stripped + "}"
    return text


def collapse_double_commas(text: str) -> str:
    return DOUBLE_COMMA.sub(",", text)


REPAIR_STEPS: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("unwrap_code_block", unwrap_code_block),
    ("extract_json_from_text", extract_json_from_text),
    ("quote_unquoted_keys", quote_unquoted_keys),
    ("strip_trailing_commas", strip_trailing_commas),
    ("normalize_single_quotes", normalize_single_quotes),
    ("insert_missing_commas", insert_missing_commas),
    ("wrap_bare_properties", wrap_bare_properties),
    ("collapse_double_commas", collapse_double_commas),
)


def _loads(text: str | None) -> Any:
    """Parse JSON, returning None for anything unparseable."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None


def extract_json_from_markdown(text: str) -> Any:
    """Parse the first fenced JSON object, or None."""
    match = MARKDOWN_JSON_BLOCK.search(text)
    return _loads(match.group(1).strip()) if match else None


def find_json_pattern(text: str) -> Any:
    """Parse the largest object with at most one level of nesting, or None."""
    matches = NESTED_OBJECT.findall(text)
    if not matches:
        return None
    return _loads(max(matches, key=len))


def extract_key_value_pairs(text: str) -> dict[str, Any] | None:
    """Build an object from ``key: value`` lines, or None when there are none."""
    pairs: dict[str, Any] = {}
    for key, raw_value in KEY_VALUE_PAIR.findall(text):
        value = raw_value.strip()
        if value in ("true", "false", "null") or NUMBER.fullmatch(value):
            pairs[key] = json.loads(value)
        else:
            pairs[key] = value
    return pairs or None


def extract_from_result_pattern(text: str) -> Any:
    """Parse the object following a ``result:`` label, or None."""
    match = RESULT_OBJECT.search(text)
    return _loads(match.group(1)) if match else None


class JsonRepairParser:
    """Applies ordered repair steps until a function call parses."""

    def parse_function_calls(self, text: str) -> RepairResult:
        """Recover function calls from possibly malformed text.

        Args:
            text: Raw model output

        Returns:
            Structured result; ``success`` is False when nothing could be recovered
        """
        errors: list[str] = []
        attempts: list[str] = []

        calls = self._try_call_shapes(text)
        if calls:
            return RepairResult(success=True, function_calls=calls, repaired_text=text, attempts=attempts)
        errors.append("Direct parse found no function call")

        repaired = text
        for step_name, step in REPAIR_STEPS:
            transformed = step(repaired)
            if transformed == repaired:
                continue
            repaired = transformed
            attempts.append(step_name)
            calls = self._try_call_shapes(repaired)
            if calls:
                logger.debug(f"Recovered {len(calls)} function calls after {step_name}")
                return RepairResult(
                    success=True, function_calls=calls, repaired_text=repaired, attempts=attempts, errors=errors
                )
            errors.append(f"No function call after {step_name}")

        call = self._extract_informal_call(text)
        if call is not None:
            attempts.append("informal_call_patterns")
            repaired_json = json.dumps({"function_call": {"name": call.name, "arguments": call.arguments}})
            return RepairResult(
                success=True, function_calls=[call], repaired_text=repaired_json, attempts=attempts, errors=errors
            )

        errors.append("No function call patterns matched")
        logger.debug(f"Repair exhausted after {len(attempts)} transformations")
        return RepairResult(success=False, repaired_text=repaired, attempts=attempts, errors=errors)

    def repair(self, text: str) -> RepairResult:
        """Run the same repair steps until the text parses as a JSON object or array."""
        errors: list[str] = []
        attempts: list[str] = []

        data = _loads(text)
        if isinstance(data, dict | list):
            return RepairResult(success=True, data=data, repaired_text=text)
        errors.append("Direct parse found no JSON object or array")

        repaired = text
        for step_name, step in REPAIR_STEPS:
            transformed = step(repaired)
            if transformed == repaired:
                continue
            repaired = transformed
            attempts.append(step_name)
            data = _loads(repaired)
            if isinstance(data, dict | list):
                return RepairResult(success=True, data=data, repaired_text=repaired, attempts=attempts, errors=errors)

        errors.append(f"Repair failed after {len(attempts)} transformations")
        return RepairResult(success=False, repaired_text=repaired, attempts=attempts, errors=errors)

    def validate_function_call(self, call: Any) -> list[str]:
        """List structural problems of a loosely-typed function call."""
        errors = []
        name = call.get("name") if isinstance(call, dict) else getattr(call, "name", None)
        arguments = (
            call.get("arguments", call.get("args")) if isinstance(call, dict) else getattr(call, "arguments", None)
        )
        call_id = call.get("id") if isinstance(call, dict) else getattr(call, "id", None)
        if not isinstance(name, str) or not name:
            errors.append("Function name must be a non-empty string")
        if not isinstance(arguments, dict):
            errors.append("Function arguments must be an object")
        if not call_id:
            errors.append("Function call must have an ID")
        return errors

    def _try_call_shapes(self, text: str) -> list[ToolCall]:
        calls = self._calls_from_object(_loads(text))
        if calls:
            return calls
        for pattern in CALL_SHAPE_PATTERNS:
            match = pattern.search(text)
            if not match:
                continue
            candidate = match.group(1) if match.groups() else match.group(0)
            calls = self._calls_from_object(_loads(candidate))
            if calls:
                return calls
        return []

    def _calls_from_object(self, parsed: Any) -> list[ToolCall]:
        if not isinstance(parsed, dict):
            return []
        if isinstance(parsed.get("function_call"), dict):
            call = self._make_call(parsed["function_call"])
            return [call] if call else []
        if isinstance(parsed.get("function_calls"), list):
            calls = [self._make_call(item) for item in parsed["function_calls"] if isinstance(item, dict)]
            return [call for call in calls if call]
        if "name" in parsed and "arguments" in parsed:
            call = self._make_call(parsed)
            return [call] if call else []
        return []

    def _make_call(self, raw: dict[str, Any]) -> ToolCall | None:
        name = raw.get("name")
        arguments = raw.get("arguments") or {}
        if not isinstance(name, str) or not name or not isinstance(arguments, dict):
            return None
        try:
            return ToolCall(name=name, arguments=arguments, format="json")
        except ValidationError:
            return None

    def _extract_informal_call(self, text: str) -> ToolCall | None:
        for pattern in INFORMAL_CALL_PATTERNS:
            for name, raw_arguments in pattern.findall(text):
                arguments = _loads(raw_arguments)
                if isinstance(arguments, dict):
                    return self._make_call({"name": name, "arguments": arguments})
        return None
