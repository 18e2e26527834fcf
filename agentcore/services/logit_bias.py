"""Decoding-time token biases that steer models toward valid JSON."""

from typing import Literal

from pydantic import BaseModel, ConfigDict

from agentcore.utils.logging import get_logger

logger = get_logger(__name__)

JsonContext = Literal["object", "array", "string", "value", "root"]
BiasPresetLevel = Literal["light", "moderate", "aggressive"]

MIN_BIAS = -100.0
MAX_BIAS = 100.0
STRUCTURAL_BOOST = 10.0
INVALID_SUPPRESSION = -20.0

QUOTE = '"'
COLON = ":"
COMMA = ","
OPEN_BRACKET = "["
CLOSE_BRACKET = "]"

JSON_STRUCTURAL_TOKENS: tuple[str, ...] = (
    "{",
    "}",
    OPEN_BRACKET,
    CLOSE_BRACKET,
    QUOTE,
    COLON,
    COMMA,
    "true",
    "false",
    "null",
    *(str(digit) for digit in range(10)),
    ".",
    "-",
)

JSON_INVALID_TOKENS: tuple[str, ...] = ("'", "`", "\\n", "\\t", "\\r", "=", ";", "(", ")", "<", ">")


class JsonBiasConfig(BaseModel):
    """Structural boost, invalid-token suppression and value overrides."""

    model_config = ConfigDict(frozen=True)

    boost_structural: bool = False
    suppress_invalid: bool = False
    value_bias: dict[str, float] | None = None


class ContextualBiasConfig(BaseModel):
    """Token overrides keyed by the JSON parse state."""

    model_config = ConfigDict(frozen=True)

    in_object: dict[str, float] | None = None
    in_array: dict[str, float] | None = None
    in_string: dict[str, float] | None = None
    in_value: dict[str, float] | None = None

    def for_context(self, context: JsonContext) -> dict[str, float] | None:
        return {
            "object": self.in_object,
            "array": self.in_array,
            "string": self.in_string,
            "value": self.in_value,
        }.get(context)


class LogitBiasConfig(BaseModel):
    """Complete bias configuration."""

    model_config = ConfigDict(frozen=True)

    token_bias: dict[int, float] | None = None
    string_bias: dict[str, float] | None = None
    json_bias: JsonBiasConfig | None = None
    contextual_bias: ContextualBiasConfig | None = None


def clamp_bias(value: float) -> float:
    """Clamp a bias into the range backends accept."""
    return max(MIN_BIAS, min(MAX_BIAS, value))


class LogitBiasCalculator:
    """Computes token-id bias maps over a fixed JSON vocabulary."""

    def __init__(self) -> None:
        """Assign sequential ids to structural tokens, then invalid tokens."""
        self._token_ids: dict[str, int] = {}
        self._tokens: dict[int, str] = {}
        for token_id, token in enumerate(JSON_STRUCTURAL_TOKENS + JSON_INVALID_TOKENS):
            self._token_ids[token] = token_id
            self._tokens[token_id] = token

    def get_token_id(self, token: str) -> int | None:
        """Look up a token's id."""
        return self._token_ids.get(token)

    def get_token(self, token_id: int) -> str | None:
        """Look up the token text for an id."""
        return self._tokens.get(token_id)

    def generate_json_bias(self, config: LogitBiasConfig) -> dict[int, float]:
        """Build a bias map from direct, structural and value biases.

        Args:
            config: Bias configuration

        Returns:
            Token id to bias, every value within [-100, 100]
        """
        bias: dict[int, float] = {}

        for token_id, value in (config.token_bias or {}).items():
            bias[int(token_id)] = clamp_bias(value)

        for token, value in (config.string_bias or {}).items():
            token_id = self.get_token_id(token)
            if token_id is not None:
                bias[token_id] = clamp_bias(value)

        if config.json_bias:
            self._apply_json_structural_bias(bias, config.json_bias)

        return bias

    def generate_contextual_bias(self, config: LogitBiasConfig, context: JsonContext) -> dict[int, float]:
        """Build a bias map for the current JSON parse state.

        Args:
            config: Bias configuration; nothing is produced without contextual_bias
            context: State from detect_json_context

        Returns:
            Token id to bias, every value within [-100, 100]
        """
        bias: dict[int, float] = {}
        if not config.contextual_bias:
            return bias

        if context == "object":
            self._adjust(bias, QUOTE, 5)
            self._adjust(bias, COLON, 8)
            self._adjust(bias, OPEN_BRACKET, -15)
            self._adjust(bias, CLOSE_BRACKET, -15)
        elif context == "array":
            self._adjust(bias, OPEN_BRACKET, 5)
            self._adjust(bias, CLOSE_BRACKET, 5)
            self._adjust(bias, COMMA, 8)
            self._adjust(bias, COLON, -15)
        elif context == "string":
            for token in JSON_STRUCTURAL_TOKENS:
                if token != QUOTE:
                    self._adjust(bias, token, -10)

        for token, value in (config.contextual_bias.for_context(context) or {}).items():
            token_id = self.get_token_id(token)
            if token_id is not None:
                bias[token_id] = clamp_bias(value)

        return bias

    def generate_bias_for_text(self, config: LogitBiasConfig, partial_text: str) -> dict[int, float]:
        """Combine the base map with the contextual map for partially generated text."""
        bias = self.generate_json_bias(config)
        context = self.detect_json_context(partial_text)
        for token_id, value in self.generate_contextual_bias(config, context).items():
            bias[token_id] = clamp_bias(bias.get(token_id, 0.0) + value)
        logger.debug(f"Bias for context {context}: {len(bias)} tokens")
        return bias

    def detect_json_context(self, text: str) -> JsonContext:
        """Classify where partially generated JSON currently stands.

        Returns ``string`` inside an open string, otherwise the innermost open
        container, ``value`` when every container is closed and ``root`` for
        empty input.
        """
        trimmed = text.strip()
        if not trimmed:
            return "root"

        stack: list[JsonContext] = []
        in_string = False
        escaped = False

        for char in trimmed:
            if escaped:
                escaped = False
                continue
            if char == "\\":
                escaped = True
                continue
            if char == QUOTE:
                in_string = not in_string
                continue
            if in_string:
                continue

            if char == "{":
                stack.append("object")
            elif char == "}" and stack and stack[-1] == "object":
                stack.pop()
            elif char == OPEN_BRACKET:
                stack.append("array")
            elif char == CLOSE_BRACKET and stack and stack[-1] == "array":
                stack.pop()

        if in_string:
            return "string"
        if stack:
            return stack[-1]
        return "value"

    @staticmethod
    def create_json_preset(level: BiasPresetLevel = "moderate") -> LogitBiasConfig:
        """Build one of the escalating preset configurations."""
        if level == "light":
            return LogitBiasConfig(
                json_bias=JsonBiasConfig(
                    boost_structural=True, suppress_invalid=True, value_bias={"true": 2, "false": 2, "null": 2}
                )
            )

        if level == "aggressive":
            return LogitBiasConfig(
                json_bias=JsonBiasConfig(
                    boost_structural=True, suppress_invalid=True, value_bias={"true": 10, "false": 10, "null": 10}
                ),
                contextual_bias=ContextualBiasConfig(
                    in_object={":": 15, ",": 10, "}": 8},
                    in_array={",": 15, "]": 10},
                    in_string={'"': 20},
                    in_value={"true": 8, "false": 8, "null": 8},
                ),
                string_bias={"'": -50, "`": -50, "=": -30, ";": -30, "(": -20, ")": -20},
            )

        return LogitBiasConfig(
            json_bias=JsonBiasConfig(
                boost_structural=True, suppress_invalid=True, value_bias={"true": 5, "false": 5, "null": 5}
            ),
            contextual_bias=ContextualBiasConfig(
                in_object={":": 8, ",": 5},
                in_array={",": 8, "]": 5},
                in_string={'"': 10},
            ),
        )

    def _apply_json_structural_bias(self, bias: dict[int, float], json_bias: JsonBiasConfig) -> None:
        if json_bias.boost_structural:
            for token in JSON_STRUCTURAL_TOKENS:
                self._adjust(bias, token, STRUCTURAL_BOOST)

        if json_bias.suppress_invalid:
            for token in JSON_INVALID_TOKENS:
                self._adjust(bias, token, INVALID_SUPPRESSION)

        for token, value in (json_bias.value_bias or {}).items():
            token_id = self.get_token_id(token)
            if token_id is not None:
                bias[token_id] = clamp_bias(value)

    def _adjust(self, bias: dict[int, float], token: str, adjustment: float) -> None:
        token_id = self.get_token_id(token)
        if token_id is not None:
            bias[token_id] = clamp_bias(bias.get(token_id, 0.0) + adjustment)
