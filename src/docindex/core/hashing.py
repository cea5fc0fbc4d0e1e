from __future__ import annotations

import hashlib

# 128-bit content fingerprint; only used for change detection, not integrity.
DEFAULT_CONTENT_HASH_ALG = "md5"


def compute_bytes_digest(data: bytes, alg: str = DEFAULT_CONTENT_HASH_ALG) -> str:
    h = hashlib.new(alg)
    h.update(data)
    return h.hexdigest()
