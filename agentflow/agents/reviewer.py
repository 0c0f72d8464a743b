from __future__ import annotations

import json
import re
from typing import Any, Mapping

from ..core.config import AgentEndpointSettings
from ..core.errors import MalformedAgentResponse
from ..core.logging import get_logger
from ..workflows.state import AgentRole
from .contracts import ReviewResult, Usage
from .http import AgentHTTPClient

logger = get_logger(name=__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.IGNORECASE | re.DOTALL)
_TEXT_KEYS = ("text", "content", "reviewedContent")

FALLBACK_SCORE = 85
FALLBACK_FEEDBACK = "Review completed"


def _clamp_score(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, int(round(score))))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1", "approved"}
    return bool(value)


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return [str(value)]


def _from_fields(fields: Mapping[str, Any], *, default_content: str | None, usage: Usage) -> ReviewResult:
    content = fields.get("reviewedContent", default_content)
    if not isinstance(content, str):
        raise MalformedAgentResponse("review response is missing 'reviewedContent'")
    return ReviewResult(
        approved=_as_bool(fields.get("approved")),
        reviewed_content=content,
        feedback=str(fields.get("feedback") or ""),
        improvements=_string_list(fields.get("improvements")),
        issues=_string_list(fields.get("issues")),
        score=_clamp_score(fields.get("score")),
        usage=usage,
    )


def _extract_json_block(text: str) -> dict[str, Any] | None:
    candidates = [match.group(1) for match in _FENCED_JSON.finditer(text)]
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        candidates.append(stripped)
    for candidate in candidates:
        try:
            decoded = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict) and "approved" in decoded:
            return decoded
    return None


def decode_review(payload: Mapping[str, Any]) -> ReviewResult:
    """Decode a reviewer response into a :class:`ReviewResult`.

    Structured responses carry ``approved`` directly. Otherwise the free-text body
    is searched for a fenced JSON verdict; if none can be decoded the review is
    treated as an approval of the raw text.
    """
    usage = Usage.from_payload(payload.get("usage"))
    if "approved" in payload:
        return _from_fields(payload, default_content=None, usage=usage)

    raw_text = next(
        (payload[key] for key in _TEXT_KEYS if isinstance(payload.get(key), str)),
        None,
    )
    if raw_text is None:
        raise MalformedAgentResponse("review response contains neither a verdict nor review text")

    block = _extract_json_block(raw_text)
    if block is not None:
        return _from_fields(block, default_content=raw_text, usage=usage)

    logger.warning(
        "review_decode_fallback",
        reason="no_json_verdict",
        text_length=len(raw_text),
        fallback_score=FALLBACK_SCORE,
    )
    return ReviewResult(
        approved=True,
        reviewed_content=raw_text,
        feedback=FALLBACK_FEEDBACK,
        improvements=[],
        issues=[],
        score=FALLBACK_SCORE,
        usage=usage,
    )


class ReviewerClient(AgentHTTPClient):
    role = AgentRole.REVIEWER

    @classmethod
    def from_settings(cls, settings: AgentEndpointSettings) -> "ReviewerClient":
        return cls(settings.reviewer_url, timeout_seconds=settings.timeout_seconds, headers=settings.extra_headers)

    async def review(
        self,
        text: str,
        action: str,
        context: str | None = None,
        root_instruction: str | None = None,
    ) -> ReviewResult:
        data = await self._post(
            "/review",
            {"text": text, "action": action, "context": context, "rootInstruction": root_instruction},
        )
        return decode_review(data)
