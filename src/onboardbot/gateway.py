"""Language model gateway with role-aware prompts and fallback replies."""

from __future__ import annotations

import logging
import re
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, List

import httpx
import openai
from openai import OpenAI

from .config import Settings
from .errors import UpstreamError
from .models import Role
from .observability import MetricsRecorder
from .personas import persona_for

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a friendly onboarding assistant for new employees at a company."

NO_CONTEXT_MARKER = "No specific context available. Use general knowledge about employee onboarding."

UNAVAILABLE_REPLY = (
    "I apologize, but the assistant service is currently unavailable due to technical issues. "
    "Please try again later or contact IT support for assistance."
)
TROUBLE_REPLY = (
    "I'm having trouble reaching the assistant right now. "
    "Please try again in a moment or contact IT support if the problem persists."
)

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_HEADER_RE = re.compile(r"^#+\s*", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"(\*\*|__)(.+?)\1", re.DOTALL)
_LEADING_ASTERISK_RE = re.compile(r"^[ \t]*\*+[ \t]*", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")


@dataclass(slots=True)
class GatewayResult:
    """Outcome of one backend call: either ``text`` or ``error`` is set."""

    text: str | None = None
    error: UpstreamError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text)


def sanitize_reply(text: str) -> str:
    """Strip markdown artefacts the prompt asks the model not to produce."""

    cleaned = _CODE_BLOCK_RE.sub("", text or "")
    cleaned = _HEADER_RE.sub("", cleaned)
    cleaned = _EMPHASIS_RE.sub(r"\2", cleaned)
    cleaned = _LEADING_ASTERISK_RE.sub("", cleaned)
    cleaned = _BLANK_RUN_RE.sub("\n\n", cleaned)
    return cleaned.strip()


def fallback_reply(error: UpstreamError) -> str:
    if error.kind in {"credentials", "quota"}:
        return UNAVAILABLE_REPLY
    return TROUBLE_REPLY


def classify_failure(exc: BaseException) -> UpstreamError:
    """Map a backend exception onto an :class:`UpstreamError` kind."""

    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        kind = "credentials"
    elif isinstance(exc, openai.RateLimitError):
        kind = "quota"
    elif isinstance(exc, (openai.APITimeoutError, httpx.TimeoutException)):
        kind = "timeout"
    elif isinstance(exc, (openai.APIConnectionError, httpx.HTTPError)):
        kind = "network"
    elif "API key" in message or "API_KEY_INVALID" in message:
        kind = "credentials"
    elif "quota" in message.lower():
        kind = "quota"
    else:
        kind = "backend"
    return UpstreamError(kind, message)


class LanguageModelGateway:
    """Wrap the configured completion backend. Public methods never raise."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: Any | None = None,
        http_client: httpx.Client | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._openai_client = client
        self._http_client = http_client
        self._metrics = metrics
        self._temperature = max(0.0, settings.chat_temperature)
        max_tokens = settings.chat_max_tokens
        self._max_tokens = max_tokens if max_tokens is not None and max_tokens > 0 else None

    @property
    def backend(self) -> str:
        return self._settings.chat_backend

    # Public API -------------------------------------------------------

    def generate_reply(
        self,
        question: str,
        knowledge_context: str = "",
        role: Role | str = Role.EMPLOYEE,
        name: str = "",
    ) -> str:
        prompt = build_prompt(question, knowledge_context, role, name)
        result = self._complete(prompt)
        if result.error is not None:
            return self._fallback(result.error, operation="reply")
        reply = sanitize_reply(result.text or "")
        if not reply:
            return self._fallback(UpstreamError("malformed", "reply was empty after sanitising"), operation="reply")
        logger.info("gateway.reply.completed backend=%s chars=%s", self.backend, len(reply))
        return reply

    def summarize(self, text: str, max_length: int = 500) -> str:
        """Summarise ``text`` for a knowledge entry, falling back to a plain prefix."""

        prompt = (
            "Summarize the following text for a knowledge base.\n"
            "Extract key points and create a concise summary.\n"
            f"Keep it under {max_length} characters.\n\n"
            f"TEXT:\n{text[:5000]}\n\n"
            "SUMMARY:"
        )
        result = self._complete(prompt)
        if not result.ok:
            if result.error is not None:
                self._record_failure(result.error, operation="summarize")
            return text[:200] + "..."
        return (result.text or "")[:max_length].strip()

    def extract_keywords(self, text: str) -> List[str]:
        prompt = (
            "Extract 3-5 keywords from the following text.\n"
            "Return them as a comma-separated list.\n\n"
            f"TEXT:\n{text[:1000]}\n\n"
            "KEYWORDS:"
        )
        result = self._complete(prompt)
        if not result.ok:
            if result.error is not None:
                self._record_failure(result.error, operation="keywords")
            return []
        keywords: list[str] = []
        for raw in (result.text or "").split(","):
            keyword = raw.strip().strip(".").lower()
            if keyword and keyword not in keywords:
                keywords.append(keyword)
        return keywords

    # Backend calls ----------------------------------------------------

    def _complete(self, prompt: str) -> GatewayResult:
        timer = (
            self._metrics.track_timing("gateway.call_duration", backend=self.backend)
            if self._metrics
            else nullcontext()
        )
        with timer:
            try:
                if self._settings.is_openai_chat_backend:
                    text = self._invoke_openai(prompt)
                elif self._settings.is_ollama_chat_backend:
                    text = self._invoke_ollama(prompt)
                else:
                    raise UpstreamError("backend", f"Unsupported chat backend: {self._settings.chat_backend}")
            except Exception as exc:
                return GatewayResult(error=classify_failure(exc))
        if not text.strip():
            return GatewayResult(error=UpstreamError("malformed", "backend returned no text"))
        return GatewayResult(text=text)

    def _invoke_openai(self, prompt: str) -> str:
        client = self._get_openai_client()
        response = client.responses.create(
            model=self._settings.openai_chat_model,
            input=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self._temperature,
            max_output_tokens=self._max_tokens,
        )
        texts: list[str] = []
        for item in getattr(response, "output", None) or []:
            if getattr(item, "type", "") == "output_text":
                texts.append(getattr(item, "text", ""))
        if texts:
            return "\n".join(texts).strip()
        return str(getattr(response, "output_text", "") or "").strip()

    def _invoke_ollama(self, prompt: str) -> str:
        model = (self._settings.ollama_model or "").strip()
        if not model:
            raise UpstreamError("backend", "OLLAMA_MODEL must be set when using the Ollama chat backend")
        url = f"{self._settings.ollama_base_url.rstrip('/')}/api/chat"
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
        }
        options: dict[str, float | int] = {}
        if self._temperature > 0.0:
            options["temperature"] = self._temperature
        if self._max_tokens is not None:
            options["num_predict"] = self._max_tokens
        if options:
            payload["options"] = options

        timeout = self._settings.llm_request_timeout
        if self._http_client is not None:
            response = self._http_client.post(url, json=payload, timeout=timeout)
        else:
            response = httpx.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
        data = response.json()
        message = data.get("message") or {}
        content = message.get("content") or data.get("response", "")
        return str(content).strip() if content else ""

    def _get_openai_client(self) -> Any:
        if self._openai_client is None:
            if not self._settings.openai_api_key:
                raise UpstreamError("credentials", "OPENAI_API_KEY must be set for the OpenAI chat backend")
            self._openai_client = OpenAI(
                api_key=self._settings.openai_api_key,
                timeout=self._settings.llm_request_timeout,
            )
        return self._openai_client

    # Failure handling -------------------------------------------------

    def _fallback(self, error: UpstreamError, *, operation: str) -> str:
        self._record_failure(error, operation=operation)
        return fallback_reply(error)

    def _record_failure(self, error: UpstreamError, *, operation: str) -> None:
        logger.warning(
            "gateway.%s.failed backend=%s kind=%s error=%s",
            operation,
            self.backend,
            error.kind,
            error,
        )
        if self._metrics:
            self._metrics.increment("gateway.failures", backend=self.backend, kind=error.kind, operation=operation)


def build_prompt(question: str, knowledge_context: str, role: Role | str, name: str = "") -> str:
    """Compose the role-aware prompt sent to the backend."""

    persona = persona_for(role)
    lines = ["ROLE: You are an onboarding assistant for new employees at a company."]
    if name:
        lines.append(f"The user's name is {name}.")
    lines.extend(
        [
            f"USER TYPE: {persona.description}",
            "",
            "CONTEXT FROM KNOWLEDGE BASE (use this information to answer):",
            knowledge_context.strip() or NO_CONTEXT_MARKER,
            "",
            "USER QUESTION:",
            f'"{question}"',
            "",
            "INSTRUCTIONS:",
            "1. Answer based on the context provided above when possible.",
            (
                "2. If the answer is not in the context, say: \"I don't have specific information about that "
                f'in our knowledge base. Please contact {persona.escalation_contact} for assistance."'
            ),
            "3. Be helpful, concise, and professional.",
            "4. Use simple dashes for lists.",
            "5. End with a relevant follow-up question if appropriate.",
            "6. Format your response in clear paragraphs.",
            "7. Never mention that you are an AI or refer to the context or the system.",
            "8. If it's a greeting, respond warmly.",
            "9. If it's a thank you, acknowledge politely.",
            "",
            "RESPONSE (in plain text, no markdown):",
        ]
    )
    return "\n".join(lines)
