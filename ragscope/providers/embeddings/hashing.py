from __future__ import annotations

import hashlib
import math
import re
from collections import Counter

from ragscope.core.config import EMBED_DIM


_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


def _feature(token: str, dim: int) -> tuple[int, float]:
    # Stable bucket, sign and weight per token; no vocabulary to maintain.
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    bucket = int(digest[:8], 16) % dim
    sign = -1.0 if int(digest[8:12], 16) % 2 else 1.0
    weight = 0.2 + (int(digest[12:20], 16) % 1000) / 1000.0
    return bucket, sign * weight


def embed_text(text: str, dim: int = EMBED_DIM) -> list[float]:
    """Unit-length bag-of-tokens vector; empty text embeds to zeros."""
    vector = [0.0] * dim
    for token, occurrences in Counter(_TOKEN_RE.findall(text.lower())).items():
        bucket, value = _feature(token, dim)
        vector[bucket] += value * occurrences
    norm = math.sqrt(sum(component * component for component in vector))
    return [component / norm for component in vector] if norm else vector


class HashingEmbedder:
    """Deterministic embedder for the in-memory store and tests."""

    def __init__(self, dim: int = EMBED_DIM) -> None:
        self.dim = dim

    async def embed(self, text: str) -> list[float]:
        return embed_text(text, self.dim)
