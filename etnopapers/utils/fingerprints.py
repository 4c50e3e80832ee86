"""Helpers for building deterministic record fingerprints and key fragments.

Fingerprints make ``LocalStoreGateway.upsert`` idempotent: re-extracting the
same document yields the same fingerprint for the same primary excerpt, so the
existing record is returned instead of a duplicate being written. Keep this
logic centralized so the builder, the store and the orchestrator stay aligned.
"""

from __future__ import annotations

import hashlib
import re
import uuid

from etnopapers.normalization.string_normalizer import StringNormalizer

_FIELD_SEPARATOR = "\x1f"


def normalize_key_fragment(value: str, *, normalizer: StringNormalizer | None = None) -> str:
    """Normalize a string for use inside fingerprint fragments.

    Lower-cased, whitespace collapsed. Falls back to plain casefolding when no
    normalizer is available.
    """
    normalized = ""
    if normalizer is not None:
        normalized = normalizer.normalize(value).normalized

    if not normalized:
        normalized = (value or "").strip().lower()

    return re.sub(r"\s+", " ", normalized).strip()


def record_fingerprint(
    document_id: str, primary_excerpt: str, *, normalizer: StringNormalizer | None = None
) -> str:
    """sha256 over the document reference and the normalized primary excerpt."""
    excerpt_key = normalize_key_fragment(primary_excerpt, normalizer=normalizer)
    payload = f"{document_id}{_FIELD_SEPARATOR}{excerpt_key}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def document_id_for(document_bytes: bytes) -> str:
    """Content-derived document id used when the caller does not supply one."""
    digest = hashlib.sha256(document_bytes).hexdigest()
    return str(uuid.uuid5(uuid.NAMESPACE_URL, digest))
