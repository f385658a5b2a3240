"""
Incremental token-to-text decoding for streamed caption output.
"""

import logging
from typing import Any, List, Optional, Sequence

from vlm_caption_serving.errors import TokenizerError

logger = logging.getLogger(__name__)


def decode_tokens(tokenizer: Any, token_ids: Sequence[int]) -> str:
    """
    Decode token IDs to text, skipping special tokens.

    Works with both ``transformers`` tokenizers and raw ``tokenizers.Tokenizer``
    objects, which share the ``decode(ids, skip_special_tokens=...)`` call.

    Raises:
        TokenizerError: If the tokenizer fails.
    """
    try:
        return tokenizer.decode(list(token_ids), skip_special_tokens=True)
    except Exception as exc:
        raise TokenizerError(f"decode failed: {exc}") from exc


class TokenStreamDecoder:
    """
    Turn a growing token sequence into text fragments that will not change.

    Subword tokenizers can re-render earlier tokens once later tokens arrive,
    so every call re-decodes the window starting at ``stable_start`` and only
    releases the suffix beyond the text already released. A fragment is
    released only when the decoded text grew and ends on an alphanumeric
    character; anything else may still merge with the next token.

    Args:
        tokenizer: Object exposing ``decode(ids, skip_special_tokens=True)``.
    """

    def __init__(self, tokenizer: Any) -> None:
        self.tokenizer = tokenizer
        self.tokens: List[int] = []
        self.stable_start = 0
        self.stable_end = 0

    def __repr__(self) -> str:
        return (
            f"TokenStreamDecoder(tokens={self.tokens}, "
            f"stable_start={self.stable_start}, stable_end={self.stable_end})"
        )

    def push(self, token: int) -> Optional[str]:
        """
        Append one token and return the newly stable text, if any.

        Returns:
            The text added since the last released fragment, or None when
            nothing new is final yet.
        """
        prev_text = self._decode(self.tokens[self.stable_start:self.stable_end])
        self.tokens.append(token)
        text = self._decode(self.tokens[self.stable_start:])

        if len(text) > len(prev_text) and text[-1].isalnum():
            self.stable_start = self.stable_end
            self.stable_end = len(self.tokens)
            return text[len(prev_text):]
        return None

    def flush(self) -> Optional[str]:
        """Return any buffered text not yet released, once generation ends."""
        prev_text = self._decode(self.tokens[self.stable_start:self.stable_end])
        text = self._decode(self.tokens[self.stable_start:])
        if len(text) > len(prev_text):
            return text[len(prev_text):]
        return None

    def decode_all(self) -> str:
        """Decode every token seen so far in one pass."""
        return self._decode(self.tokens)

    def reset(self) -> None:
        """Clear all state so the decoder can serve another session."""
        self.tokens.clear()
        self.stable_start = 0
        self.stable_end = 0

    def token_id(self, token: str) -> Optional[int]:
        """Look up the ID of a vocabulary entry, or None if it is unknown."""
        return self.tokenizer.get_vocab().get(token)

    def _decode(self, token_ids: Sequence[int]) -> str:
        if not token_ids:
            return ""
        return decode_tokens(self.tokenizer, token_ids)
