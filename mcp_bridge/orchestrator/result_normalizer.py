"""
Normalization of MCP responses for HTTP callers.

MCP servers answer tool calls in several shapes: a JSON-RPC error, MCP
content blocks, a {success, errorMessage, result} envelope, or an
arbitrary result object. normalize_result() reduces all of them to one
NormalizedResult(success, data, error_message).

Content-block results carry no machine-readable status, so their text is
scanned for failure words. That classification is a best-effort guess,
not a protocol guarantee; callers that need certainty should inspect the
raw payload in `data`. The classifier is pluggable and can be disabled by
giving it no keywords.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from ..config.bridge_config import DEFAULT_FAILURE_KEYWORDS


@dataclass
class NormalizedResult:
    """Uniform success/error/payload contract returned to HTTP callers."""
    success: bool
    data: Any = None
    error_message: Optional[str] = None


class KeywordFailureClassifier:
    """Flags text that mentions any configured failure word (case-insensitive)."""

    def __init__(self, keywords: Iterable[str] = DEFAULT_FAILURE_KEYWORDS):
        self.keywords = tuple(k for k in keywords if k)
        if self.keywords:
            self._pattern = re.compile("|".join(re.escape(k) for k in self.keywords), re.IGNORECASE)
        else:
            self._pattern = None

    @property
    def enabled(self) -> bool:
        return self._pattern is not None

    def looks_like_failure(self, text: str) -> bool:
        if self._pattern is None or not text:
            return False
        return self._pattern.search(text) is not None


_DEFAULT_CLASSIFIER = KeywordFailureClassifier()


def extract_text(content: list) -> str:
    """Join the `text` of every content block that has one, newline-separated."""
    parts = []
    for block in content:
        if isinstance(block, dict) and block.get("text"):
            parts.append(str(block["text"]))
    return "\n".join(parts)


def normalize_result(
    response: Optional[Dict[str, Any]],
    classifier: Optional[KeywordFailureClassifier] = None
) -> NormalizedResult:
    """
    Reduce a raw JSON-RPC response to a NormalizedResult.

    Rules, first match wins:
    1. No response                      -> failure "No response"
    2. Response has an error (even {})  -> failure with error.message ("MCP error" fallback)
    3. Result missing/null              -> failure "Empty result"
    4. Result has content blocks        -> joined text; failure if the classifier flags it
    5. Result has a boolean `success`   -> passed through with errorMessage and result/data
    6. Anything else                    -> success with the whole result

    Args:
        response: JSON-RPC response dict (or None)
        classifier: Failure classifier for content-block text

    Returns:
        NormalizedResult
    """
    classifier = classifier or _DEFAULT_CLASSIFIER

    if response is None:
        return NormalizedResult(success=False, error_message="No response")

    error = response.get("error")
    if error is not None:
        message = error.get("message") if isinstance(error, dict) else str(error)
        return NormalizedResult(success=False, error_message=message or "MCP error")

    result = response.get("result")
    if result is None:
        return NormalizedResult(success=False, error_message="Empty result")

    if not isinstance(result, dict):
        return NormalizedResult(success=True, data=result)

    content = result.get("content")
    if isinstance(content, list):
        text = extract_text(content)
        looks_error = classifier.looks_like_failure(text)
        return NormalizedResult(
            success=not looks_error,
            data=text or result,
            error_message=text if looks_error else None
        )

    if isinstance(result.get("success"), bool):
        payload = result.get("result")
        if payload is None:
            payload = result.get("data")
        return NormalizedResult(
            success=result["success"],
            data=payload,
            error_message=result.get("errorMessage") or None
        )

    return NormalizedResult(success=True, data=result)
