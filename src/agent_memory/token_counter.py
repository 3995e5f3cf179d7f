"""Token counting: tiktoken when an encoding is available, an estimate otherwise."""

from __future__ import annotations

import tiktoken
from loguru import logger

ESTIMATE_SCHEME = "estimate"


def _load_encoding(model: str) -> tiktoken.Encoding | None:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.info(f"No tiktoken encoding for model {model!r}, estimating token counts")
    except Exception as e:
        # Encodings are downloaded on first use, so this is usually a network failure
        logger.warning(
            f"tiktoken encoding for {model!r} could not be loaded ({e}); "
            f"falling back to estimated token counts"
        )
    return None


class TokenCounter:
    """Counts tokens for budget management.

    The scheme is fixed at construction. Stored ``Message.tokens`` values are
    only comparable with counts made under the same :attr:`scheme`.
    """

    def __init__(self, model: str = "gpt-4"):
        self._model = model
        self._encoding = _load_encoding(model)

    @property
    def scheme(self) -> str:
        if self._encoding is None:
            return ESTIMATE_SCHEME
        return f"tiktoken:{self._encoding.name}"

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is None:
            return estimate_tokens(text)
        return len(self._encoding.encode(text, disallowed_special=()))


def _is_cjk(c: str) -> bool:
    return (
        "\u4e00" <= c <= "\u9fff"  # CJK Unified
        or "\uac00" <= c <= "\ud7af"  # Hangul
        or "\u3040" <= c <= "\u30ff"  # Hiragana, Katakana
    )


def estimate_tokens(text: str) -> int:
    """About 4 characters per token, 2 for CJK text; at least 1."""
    cjk = sum(1 for c in text if _is_cjk(c))
    return max(1, (len(text) - cjk) // 4 + cjk // 2)
