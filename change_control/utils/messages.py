"""
User-facing message lookup.

The kernel never depends on a translator being present or healthy: a
missing translator, a missing key or a translator error all fall back to
the built-in English default.
"""

from collections.abc import Callable

from change_control.logging_config import get_logger

logger = get_logger("utils.messages")

Translator = Callable[[str], str | None]


def translate(translator: Translator | None, key: str, default: str) -> str:
    if translator is None:
        return default
    try:
        return translator(key) or default
    except Exception as exc:
        logger.warning("translation_failed", extra={"key": key, "error": str(exc)})
        return default
