from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from riskradar.gateway import ModelError

if TYPE_CHECKING:
    from riskradar.gateway import ModelGateway

log = logging.getLogger(__name__)

_ENGLISH = {"", "en", "eng", "english"}
# Anything outside Latin-1 and Latin Extended is worth a translation round-trip.
_NON_LATIN_RE = re.compile(r"[^\u0000-\u024f\u1e00-\u1eff\u2000-\u206f\u20a0-\u20cf]")

TRANSLATE_SYSTEM_PROMPT = "You translate short news text. Return only the translated text."
TRANSLATE_PROMPT = (
    "Translate the following {lang} text to English for supply-chain risk analysis. "
    "Keep company, port, and region names unchanged. Return only the translated text.\n\n"
    "{text}"
)


def needs_translation(text: str, source_lang: str | None) -> bool:
    lang = (source_lang or "").strip().lower()
    if lang in _ENGLISH:
        return bool(_NON_LATIN_RE.search(text or ""))
    return True


class Translator:
    """Best-effort translation of headlines through the model gateway.

    Returns the input unchanged when no gateway is configured, the text is
    already English, or the model call fails.
    """

    def __init__(self, gateway: ModelGateway | None = None):
        self.gateway = gateway

    async def translate(self, text: str, source_lang: str | None = None) -> str:
        if not text or self.gateway is None or not needs_translation(text, source_lang):
            return text
        prompt = TRANSLATE_PROMPT.format(lang=source_lang or "non-English", text=text)
        try:
            translated = await self.gateway.complete(
                prompt, system=TRANSLATE_SYSTEM_PROMPT, temperature=0.0, max_tokens=256,
            )
        except ModelError as exc:
            log.warning("Translation failed, keeping original text: %s", exc)
            return text
        translated = translated.strip().strip('"').strip()
        return translated or text
