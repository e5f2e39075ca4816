"""
Cache key derivation.

A response key is ``{prefix}:{endpoint}:{fingerprint}`` where the endpoint
path is split into colon-separated segments (so glob patterns can address
path segments) and the fingerprint is a fixed-width digest of the
canonicalised parameter bag.
"""

import hashlib
import json
import re
from typing import Any, Mapping, Optional

from shared.errors import KeyDerivationError

DEFAULT_PREFIX = "api"

# 64-bit blake2b digest rendered as hex
FINGERPRINT_BYTES = 8
FINGERPRINT_WIDTH = FINGERPRINT_BYTES * 2

# Glob fragment matching exactly one fingerprint segment
FINGERPRINT_GLOB = "?" * FINGERPRINT_WIDTH

_GLOB_META = re.compile(r"([*?\[\]\\])")


def canonicalize(params: Optional[Mapping[str, Any]]) -> str:
    """Serialize params with keys sorted at every nesting level."""
    if params is None:
        params = {}
    try:
        return json.dumps(
            params,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as exc:
        raise KeyDerivationError(
            "Parameters are not serializable",
            details={"error": str(exc)},
        ) from exc


def fingerprint(params: Optional[Mapping[str, Any]]) -> str:
    """Fixed-width, non-cryptographic-strength digest of the canonical params."""
    canonical = canonicalize(params)
    return hashlib.blake2b(canonical.encode("utf-8"), digest_size=FINGERPRINT_BYTES).hexdigest()


def normalize_endpoint(endpoint: str) -> str:
    """Turn ``GET /api/services/s1`` into ``GET:api:services:s1``."""
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise KeyDerivationError("Endpoint must be a non-empty string", details={"endpoint": repr(endpoint)})

    segments = []
    for part in endpoint.strip().replace(" ", "/").split("/"):
        part = part.strip(":")
        if part:
            segments.append(part)
    if not segments:
        raise KeyDerivationError("Endpoint has no path segments", details={"endpoint": endpoint})
    return ":".join(segments)


def escape_glob(text: str) -> str:
    """Escape glob metacharacters so ``text`` matches only itself."""
    return _GLOB_META.sub(r"\\\1", text)


def derive_key(endpoint: str, params: Optional[Mapping[str, Any]] = None, prefix: str = DEFAULT_PREFIX) -> str:
    """Derive the response cache key for an endpoint and parameter bag."""
    return f"{prefix}:{normalize_endpoint(endpoint)}:{fingerprint(params)}"
