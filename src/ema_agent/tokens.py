"""
Shared tiktoken encoder.

Loading an encoding may hit the network the first time (tiktoken downloads
and caches the BPE ranks), so the encoder is created lazily and reused.
Errors propagate to the caller, which decides how to degrade.
"""

from functools import lru_cache

import tiktoken

DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=4)
def get_encoder(encoding: str = DEFAULT_ENCODING) -> "tiktoken.Encoding":
    """Get a cached tiktoken encoder."""
    return tiktoken.get_encoding(encoding)


def count_tokens(text: str, encoding: str = DEFAULT_ENCODING) -> int:
    """Count BPE tokens in `text`."""
    if not text:
        return 0
    return len(get_encoder(encoding).encode(text, disallowed_special=()))
