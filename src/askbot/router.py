"""Provider selection, premium fallback and history bookkeeping."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from .errors import ConfigurationError, InvalidInput, UpstreamError
from .history import ConversationStore, Turn
from .providers import Attachment, Provider

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are AskBot AI powered by DeepSeek. You must NEVER identify as GPT, "
    "Claude, Gemini, or any other AI. When asked who you are, always respond "
    "that you are AskBot powered by DeepSeek AI. You are helpful and knowledgeable."
)


@dataclass(frozen=True)
class Attempt:
    """Outcome of one provider call: either ``text`` or ``error`` is set."""
    provider: str
    text: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ProviderRouter:
    """Route chat requests to the primary or premium provider.

    Free users go straight to the primary provider. Premium users go to the
    secondary provider with an identity-pinning system turn; if that call
    fails for any reason, the same history is sent once to the primary
    provider without the system turn. A primary failure is final.
    """

    def __init__(
        self,
        store: ConversationStore,
        primary: Optional[Provider],
        secondary: Optional[Provider] = None,
        *,
        vision: Any = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.store = store
        self.primary = primary
        self.secondary = secondary
        self.vision = vision
        self.system_prompt = system_prompt

    # --------- chat ----------
    def generate(self, user_id: str, message: Any, is_premium: bool = False) -> str:
        if not isinstance(message, str):
            raise InvalidInput("'message' must be a string")
        if not message.strip():
            raise InvalidInput("'message' must not be empty")
        primary = self._require_primary()

        # the lock covers store mutations only, never the provider call
        with self.store.lock(user_id):
            self.store.append(user_id, Turn("user", message))
            history = self.store.snapshot(user_id)

        if is_premium:
            attempt = self._attempt(
                self.secondary, (Turn("system", self.system_prompt),) + history
            )
            if not attempt.ok:
                logger.warning(
                    "Premium provider failed for user=%s (%s); falling back to %s",
                    user_id, attempt.error, primary.name,
                )
                attempt = self._attempt(primary, history)
        else:
            attempt = self._attempt(primary, history)

        if not attempt.ok:
            raise self._as_upstream(attempt)

        self.store.append(user_id, Turn("assistant", attempt.text))
        logger.info("Reply for user=%s from %s (%d chars)", user_id, attempt.provider, len(attempt.text))
        return attempt.text

    def generate_multimodal(self, user_id: str, message: Any, files: Sequence[Attachment]) -> str:
        """Send text plus image attachments to the vision model (no fallback)."""
        if not isinstance(message, str):
            raise InvalidInput("'message' must be a string")
        images = [f for f in files if f.is_image]
        if not images:
            raise InvalidInput("at least one image file is required")
        if self.vision is None:
            raise ConfigurationError(
                "API_KEY not configured. Please set API_KEY environment variable."
            )

        # binary data is never stored, only what the user typed
        recorded = message if message.strip() else f"[{len(images)} image attachment(s)]"
        self.store.append(user_id, Turn("user", recorded))
        try:
            text = self.vision.complete_multimodal(message, images)
        except UpstreamError:
            raise
        except Exception as e:
            raise UpstreamError(f"{self.vision.name}: {e}", provider=self.vision.name) from e
        self.store.append(user_id, Turn("assistant", text))
        return text

    def relay(self, turns: Sequence[Turn]) -> str:
        """Stateless pass-through of a client-supplied transcript to the primary."""
        primary = self._require_primary()
        attempt = self._attempt(primary, turns)
        if not attempt.ok:
            raise self._as_upstream(attempt)
        return attempt.text

    # --------- diagnostics ----------
    def probe_secondary(self) -> Dict[str, Any]:
        """Ask the premium provider who it is; never raises."""
        if self.secondary is None:
            return {"success": False, "error": "DEEPSEEK_API_KEY not configured"}
        attempt = self._attempt(
            self.secondary,
            (Turn("system", self.system_prompt), Turn("user", "Who are you?")),
        )
        if not attempt.ok:
            return {"success": False, "provider": attempt.provider, "error": str(attempt.error)}
        return {"success": True, "provider": attempt.provider, "response": attempt.text}

    # --------- internals ----------
    def _require_primary(self) -> Provider:
        if self.primary is None:
            raise ConfigurationError(
                "API_KEY not configured. Please set API_KEY environment variable."
            )
        return self.primary

    @staticmethod
    def _attempt(provider: Optional[Provider], turns: Sequence[Turn]) -> Attempt:
        if provider is None:
            return Attempt("unconfigured", error=ConfigurationError("provider not configured"))
        try:
            return Attempt(provider.name, text=provider.complete(turns))
        except Exception as e:
            return Attempt(provider.name, error=e)

    @staticmethod
    def _as_upstream(attempt: Attempt) -> UpstreamError:
        err = attempt.error
        if isinstance(err, UpstreamError):
            return err
        return UpstreamError(f"{attempt.provider}: {err}", provider=attempt.provider)
