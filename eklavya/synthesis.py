"""Final synthesis: ask the backend for a decision record and extract it.

Extraction never raises. Fields that are missing or malformed are repaired
one by one; only text that cannot be parsed at all yields the fully degraded
record.
"""

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from config.config_loader import TurnParams
from eklavya.adapter import BackendTarget, GenerationAdapter
from eklavya.models import CONFIDENCE_LEVELS, Message, Synthesis
from eklavya.prompts import SynthesisInput, build_synthesis_prompt

logger = logging.getLogger(__name__)

LIST_FIELDS = ("decisions", "dissent", "open_questions", "actions")
DEFAULT_CONFIDENCE = "medium"
DEFAULT_SUMMARY = "See transcript."
UNPARSEABLE_SUMMARY = "Synthesis could not be parsed. See the transcript for the full debate."
JSON_PREFILL = "{"

_LEADING_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*[ \t]*\n?")
_TRAILING_FENCE = re.compile(r"\n?[ \t]*```\s*$")


def degraded_synthesis(summary: str = UNPARSEABLE_SUMMARY) -> Synthesis:
    """The explicit fallback record: empty lists, low confidence."""
    return Synthesis(confidence="low", summary=summary, degraded=True)


def strip_code_fences(text: str) -> str:
    """Remove a leading and/or trailing ``` marker (with optional language tag)."""
    text = _LEADING_FENCE.sub("", text.strip())
    return _TRAILING_FENCE.sub("", text).strip()


def extract_json_candidate(text: str) -> str | None:
    """Return the substring from the first '{' to the last '}', or None."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    items: list[str] = []
    for item in value:
        if isinstance(item, bool) or item is None:
            continue
        if isinstance(item, (int, float)):
            item = str(item)
        if isinstance(item, str) and item.strip():
            items.append(item.strip())
    return items


def _confidence(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() in CONFIDENCE_LEVELS:
        return value.strip().lower()
    return DEFAULT_CONFIDENCE


def _summary(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return DEFAULT_SUMMARY


def repair_synthesis(data: dict[str, Any]) -> Synthesis:
    """Build a schema-conformant record, defaulting each bad field on its own."""
    lists = {name: _string_list(data.get(name)) for name in LIST_FIELDS}
    return Synthesis(
        decisions=lists["decisions"],
        dissent=lists["dissent"],
        open_questions=lists["open_questions"],
        actions=lists["actions"],
        confidence=_confidence(data.get("confidence")),
        summary=_summary(data.get("summary")),
    )


def extract_synthesis(raw: str | None) -> Synthesis:
    """Recover a decision record from raw model text. Never raises."""
    text = strip_code_fences(raw or "")
    candidate = extract_json_candidate(text)
    if candidate is None:
        logger.warning("Synthesis output contained no JSON object; using degraded record")
        logger.debug("Raw synthesis output: %r", raw)
        return degraded_synthesis()

    try:
        data = json.loads(candidate)
    except (json.JSONDecodeError, RecursionError) as exc:
        logger.warning("Synthesis JSON failed to parse (%s); using degraded record", exc)
        logger.debug("Raw synthesis output: %r", raw)
        return degraded_synthesis()

    if not isinstance(data, dict):
        return degraded_synthesis()
    return repair_synthesis(data)


async def synthesize(
    question: str,
    transcript: list[Message],
    adapter: GenerationAdapter,
    target: BackendTarget,
    params: TurnParams,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> Synthesis:
    """Run the single synthesis call and extract its record.

    The call is buffered (never streamed) since its output is parsed as data.

    Raises:
        ProviderError: If the synthesis call itself fails.
    """
    prompt = build_synthesis_prompt(SynthesisInput(question=question, transcript=tuple(transcript)))
    prefill = JSON_PREFILL if adapter.supports_prefill(target) else None

    logger.info("Running synthesis via %s", target.label)

    raw = await adapter.generate(
        target,
        prompt.system,
        prompt.user,
        max_tokens=params.max_tokens,
        temperature=params.temperature,
        prefill=prefill,
        on_retry=on_retry,
    )
    return extract_synthesis(raw)
