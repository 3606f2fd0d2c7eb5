"""Upstream LLM providers: Google Gemini (primary, vision) and DeepSeek (premium)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from google import genai
from google.genai import types
from openai import OpenAI

from .errors import ConfigurationError, UpstreamError
from .history import Turn

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEEPSEEK_BASE_URL = "https://api.deepseek.com"


# -----------------------------
# Types & prompt assembly
# -----------------------------

@dataclass(frozen=True)
class Attachment:
    """A decoded file sent alongside a chat message."""
    mime_type: str
    data: bytes

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")


class Provider(Protocol):
    name: str
    model: str

    def complete(self, turns: Sequence[Turn]) -> str: ...


def render_prompt(turns: Sequence[Turn]) -> str:
    """Flatten turns into ``role: content`` lines, oldest first."""
    return "\n".join(f"{t.role}: {t.content}" for t in turns)


def to_chat_messages(turns: Sequence[Turn]) -> List[Dict[str, str]]:
    """Build an OpenAI-style message list; anything not user/system is assistant."""
    msgs: List[Dict[str, str]] = []
    for t in turns:
        role = t.role if t.role in ("user", "system") else "assistant"
        msgs.append({"role": role, "content": t.content})
    return msgs


# -----------------------------
# Gemini
# -----------------------------

class GeminiProvider:
    """Thin wrapper around :mod:`google.genai` for text and image+text prompts."""

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-1.5-flash",
        *,
        timeout: float = DEFAULT_TIMEOUT,
        client: Any = None,
    ) -> None:
        """
        Parameters
        ----------
        api_key : str | None
            Gemini API key. Required unless ``client`` is given.
        model : str
            Model name passed to ``generate_content``.
        timeout : float
            Request timeout in seconds.
        client : Any
            Pre-built client exposing ``models.generate_content`` (tests).
        """
        self.model = model
        if client is None:
            if not api_key:
                raise ConfigurationError(
                    "API_KEY not configured. Please set API_KEY environment variable."
                )
            client = genai.Client(
                api_key=api_key,
                # google-genai expects milliseconds
                http_options=types.HttpOptions(timeout=int(timeout * 1000)),
            )
        self._client = client

    def complete(self, turns: Sequence[Turn]) -> str:
        return self._generate(render_prompt(turns))

    def complete_multimodal(self, text: str, attachments: Sequence[Attachment]) -> str:
        """Send the text part (if any) followed by each attachment as inline bytes."""
        parts: List[Any] = []
        if text.strip():
            parts.append(types.Part.from_text(text=text))
        for a in attachments:
            parts.append(types.Part.from_bytes(data=a.data, mime_type=a.mime_type))
        return self._generate(parts)

    def _generate(self, contents: Any) -> str:
        try:
            response = self._client.models.generate_content(model=self.model, contents=contents)
        except Exception as e:
            raise UpstreamError(f"{self.name}: {e}", provider=self.name) from e

        text = getattr(response, "text", None)
        if not isinstance(text, str) or not text.strip():
            raise UpstreamError(f"{self.name}: empty response", provider=self.name)
        return text


# -----------------------------
# DeepSeek (OpenAI-compatible)
# -----------------------------

class DeepSeekProvider:
    """Chat completions against DeepSeek through the ``openai`` SDK."""

    name = "deepseek"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "deepseek-chat",
        *,
        base_url: str = DEEPSEEK_BASE_URL,
        max_tokens: int = 4000,
        temperature: float = 0.7,
        timeout: float = DEFAULT_TIMEOUT,
        client: Any = None,
    ) -> None:
        self.model = model
        self.max_tokens = int(max_tokens)
        self.temperature = float(temperature)
        if client is None:
            if not api_key:
                raise ConfigurationError("DEEPSEEK_API_KEY not configured")
            client = OpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=httpx.Timeout(timeout, connect=5.0),
                # fallback to the primary provider is the only retry
                max_retries=0,
            )
        self._client = client

    def complete(self, turns: Sequence[Turn]) -> str:
        messages = to_chat_messages(turns)
        logger.debug("Messages to %s: %d", self.name, len(messages))
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            raise UpstreamError(f"{self.name}: {e}", provider=self.name) from e

        try:
            text = completion.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise UpstreamError(f"{self.name}: malformed response", provider=self.name) from e
        if not isinstance(text, str) or not text.strip():
            raise UpstreamError(f"{self.name}: empty response", provider=self.name)
        return text


# -----------------------------
# Convenience factory
# -----------------------------

def _api_key(section: Dict[str, Any], default_env: str, env: Dict[str, str]) -> Optional[str]:
    if section.get("api_key"):
        return str(section["api_key"])
    return env.get(str(section.get("api_key_env") or default_env)) or None


def create_from_config(cfg: Dict[str, Any], env: Dict[str, str]) -> Dict[str, Any]:
    """Build ``{"primary", "secondary", "vision"}`` providers from config.

    A provider whose credentials are missing is returned as ``None`` and a
    warning is logged; the router decides what that means per request.
    """
    prov_cfg = (cfg or {}).get("providers", {}) or {}
    timeout = float(prov_cfg.get("timeout_seconds", DEFAULT_TIMEOUT))
    primary_cfg = prov_cfg.get("primary", {}) or {}
    secondary_cfg = prov_cfg.get("secondary", {}) or {}
    vision_cfg = prov_cfg.get("vision", {}) or {}

    out: Dict[str, Any] = {"primary": None, "secondary": None, "vision": None}

    gemini_key = _api_key(primary_cfg, "API_KEY", env)
    if gemini_key:
        out["primary"] = GeminiProvider(
            gemini_key, primary_cfg.get("model", "gemini-1.5-flash"), timeout=timeout
        )
        vision_key = _api_key(vision_cfg, "API_KEY", env) or gemini_key
        out["vision"] = GeminiProvider(
            vision_key, vision_cfg.get("model", "gemini-1.5-flash"), timeout=timeout
        )
    else:
        logger.warning("API_KEY not found in environment; primary provider disabled")

    deepseek_key = _api_key(secondary_cfg, "DEEPSEEK_API_KEY", env)
    if deepseek_key:
        out["secondary"] = DeepSeekProvider(
            deepseek_key,
            secondary_cfg.get("model", "deepseek-chat"),
            base_url=secondary_cfg.get("base_url", DEEPSEEK_BASE_URL),
            max_tokens=secondary_cfg.get("max_tokens", 4000),
            temperature=secondary_cfg.get("temperature", 0.7),
            timeout=timeout,
        )
    else:
        logger.warning("DEEPSEEK_API_KEY not found; premium requests will use the primary provider")

    return out
