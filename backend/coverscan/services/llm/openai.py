from __future__ import annotations

import json
import logging
from typing import Any

from openai import OpenAI
from tenacity import Retrying, stop_after_attempt, wait_exponential

from coverscan.config import get_settings
from coverscan.errors import CollaboratorError
from coverscan.services.collaborators import (
    CoverAnalysis,
    PageClass,
    TextClassifier,
    TextReformatter,
    VisionClassifier,
)
from coverscan.services.llm.prompts import (
    COVER_ANALYSIS_PROMPT,
    COVER_ANALYSIS_TOOL,
    FORMAT_SNIPPET_SYSTEM_PROMPT,
    FORMAT_SNIPPET_TOOL,
    PAGE_CLASSIFICATION_SYSTEM_PROMPT,
    PAGE_CLASSIFICATION_TOOL,
    format_snippet_user_prompt,
    page_classification_user_prompt,
)


class OpenAIService(VisionClassifier, TextClassifier, TextReformatter):
    """Vision, page classification and snippet formatting backed by OpenAI tool calls."""

    def __init__(self, client: OpenAI | None = None) -> None:
        settings = get_settings()
        if client is None:
            if not settings.openai_api_key:
                raise RuntimeError("OpenAI API key is not configured.")
            client = OpenAI(api_key=settings.openai_api_key)
        self._client = client
        self._vision_model = settings.vision_model
        self._classifier_model = settings.classifier_model
        self._formatter_model = settings.formatter_model
        self._max_retry = max(1, settings.max_retry_attempts)
        self._logger = logging.getLogger(__name__)

    def _call_tool(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tool: dict[str, Any],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        tool_name = tool["function"]["name"]
        self._logger.debug("Sending OpenAI request model=%s tool=%s", model, tool_name)
        retryer = Retrying(
            wait=wait_exponential(multiplier=1, min=1, max=10),
            stop=stop_after_attempt(self._max_retry),
            reraise=True,
        )

        kwargs: dict[str, Any] = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        for attempt in retryer:
            with attempt:
                response = self._client.chat.completions.create(
                    model=model,
                    messages=messages,
                    tools=[tool],
                    tool_choice={"type": "function", "function": {"name": tool_name}},
                    **kwargs,
                )
                return extract_tool_arguments(response)

        raise RuntimeError("OpenAI request failed after retries.")

    def analyze_cover(self, image_url: str) -> CoverAnalysis:
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": COVER_ANALYSIS_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }
        ]
        args = self._call_tool(self._vision_model, messages, COVER_ANALYSIS_TOOL, max_tokens=500)
        confidence = args.get("confidence")
        try:
            confidence_value = float(confidence) if confidence is not None else 0.0
        except (TypeError, ValueError) as exc:
            raise CollaboratorError(f"Cover analysis returned a non-numeric confidence: {confidence!r}") from exc
        fiction = args.get("fiction")
        return CoverAnalysis(
            is_book=bool(args.get("isBook")),
            confidence=confidence_value,
            title=(args.get("title") or "").strip() or None,
            author=(args.get("author") or "").strip() or None,
            fiction=fiction if isinstance(fiction, bool) else None,
            raw=args,
        )

    def classify(self, sample: str, ordinal: int, is_fiction: bool) -> PageClass:
        messages = [
            {"role": "system", "content": PAGE_CLASSIFICATION_SYSTEM_PROMPT},
            {"role": "user", "content": page_classification_user_prompt(sample, ordinal, is_fiction)},
        ]
        args = self._call_tool(self._classifier_model, messages, PAGE_CLASSIFICATION_TOOL, temperature=0.0)
        label = str(args.get("classification", "")).strip().upper()
        if label == PageClass.CONTENT.value:
            return PageClass.CONTENT
        return PageClass.FRONTMATTER

    def format(self, raw_text: str) -> str:
        messages = [
            {"role": "system", "content": FORMAT_SNIPPET_SYSTEM_PROMPT},
            {"role": "user", "content": format_snippet_user_prompt(raw_text)},
        ]
        args = self._call_tool(self._formatter_model, messages, FORMAT_SNIPPET_TOOL, temperature=0.2)
        formatted = args.get("formattedText")
        if not isinstance(formatted, str) or not formatted.strip():
            raise CollaboratorError("Formatter response did not include formattedText.")
        return formatted


def extract_tool_arguments(completion: Any) -> dict[str, Any]:
    """Pull the JSON arguments out of a tool call (or a legacy function call)."""
    choices = getattr(completion, "choices", None) or []
    if not choices:
        raise CollaboratorError("OpenAI response contained no choices.")
    message = choices[0].message

    raw_arguments: str | None = None
    tool_calls = getattr(message, "tool_calls", None) or []
    if tool_calls:
        raw_arguments = tool_calls[0].function.arguments
    else:
        function_call = getattr(message, "function_call", None)
        if function_call is not None:
            raw_arguments = function_call.arguments

    if not raw_arguments:
        raise CollaboratorError("OpenAI response did not contain a tool call.")
    try:
        parsed = json.loads(raw_arguments)
    except json.JSONDecodeError as exc:
        raise CollaboratorError(f"Tool call arguments were not valid JSON. {raw_arguments}") from exc
    if not isinstance(parsed, dict):
        raise CollaboratorError("Tool call arguments were not a JSON object.")
    return parsed
