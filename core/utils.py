
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

T = TypeVar("T")


def clean_json_response(content: str) -> str:
    """
    Clean JSON response from LLM by removing markdown code blocks.

    Args:
        content: The raw string response from LLM

    Returns:
        Cleaned string containing just the JSON content
    """
    # Remove markdown code blocks
    pattern = r"```(?:json)?\s*(.*?)\s*```"
    match = re.search(pattern, content, re.DOTALL)
    if match:
        return match.group(1)

    # Models sometimes wrap the object in prose; keep the outermost braces.
    stripped = content.strip()
    start = stripped.find("{")
    end = stripped.rfind("}")
    if start > 0 and end > start:
        return stripped[start:end + 1]
    return stripped


@dataclass
class Parsed(Generic[T]):
    """The model output parsed and validated."""
    value: T


@dataclass
class Fallback(Generic[T]):
    """The output was unusable; ``value`` is the caller's default."""
    value: T
    reason: str


@dataclass
class ParseError:
    """The output was unusable and the caller supplied no default."""
    reason: str
    raw: str = ""


ParseResult = Union[Parsed[T], Fallback[T], ParseError]


def parse_json_output(
    content: Optional[str],
    validate: Optional[Callable[[Any], T]] = None,
    default: Optional[Callable[[], T]] = None,
) -> "ParseResult[T]":
    """
    Parse a JSON document produced by a model.

    ``validate`` converts the decoded document into the caller's type and
    raises ``ValueError``/``KeyError``/``TypeError`` when it does not fit.
    When parsing or validation fails the result is ``Fallback(default())`` if
    a default factory is given, otherwise ``ParseError``.
    """
    def _failed(reason: str) -> "ParseResult[T]":
        if default is not None:
            return Fallback(default(), reason)
        return ParseError(reason, raw=(content or "")[:500])

    if not content or not content.strip():
        return _failed("empty response")

    try:
        document = json.loads(clean_json_response(content))
    except json.JSONDecodeError as e:
        return _failed(f"invalid JSON: {e.msg}")

    if validate is None:
        return Parsed(document)

    try:
        return Parsed(validate(document))
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        return _failed(f"unexpected structure: {e}")
