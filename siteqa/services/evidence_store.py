"""
Evidence store adapter.

The workflow keeps only references to files (photos, test certificates,
documents). Turning a reference into something a browser can open is
delegated to an ``EvidenceStore``, registered as
``app.extensions["evidence_store"]``.

The default implementation maps a reference onto ``EVIDENCE_BASE_URL``.
"""

from urllib.parse import quote

from flask import current_app


class EvidenceStore:
    """Resolve stored evidence references to URL metadata."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def resolve(self, ref) -> dict:
        if isinstance(ref, dict):
            key = ref.get("ref") or ref.get("document_ref") or ""
            filename = ref.get("filename")
        else:
            key = str(ref)
            filename = None
        if key.startswith(("http://", "https://")):
            url = key
        else:
            url = f"{self.base_url}/{quote(key.lstrip('/'))}"
        return {
            "ref": key,
            "url": url,
            "filename": filename or key.rsplit("/", 1)[-1],
        }

    def resolve_many(self, refs) -> list[dict]:
        return [self.resolve(r) for r in refs or []]


def init_evidence_store(app, store: EvidenceStore | None = None):
    app.extensions["evidence_store"] = store or EvidenceStore(app.config.get("EVIDENCE_BASE_URL", ""))


def get_evidence_store() -> EvidenceStore:
    store = current_app.extensions.get("evidence_store")
    if store is None:
        store = EvidenceStore(current_app.config.get("EVIDENCE_BASE_URL", ""))
    return store
