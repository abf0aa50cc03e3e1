"""
Document Loader - Resolves the RFP reference into text and metadata.

The loader reads rfp_document.id, fetches the document through a
DocumentSource and writes {text, metadata, status} back to rfp_document.
Transient failures (timeouts, 429, 5xx) are retried with backoff;
not-found and forbidden fail immediately. Either way a failed load ends
up as an errors entry and rfp_document.status == "error", never as an
exception past the node.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from proposal_engine.errors import (
    DocumentForbiddenError,
    DocumentNotFoundError,
    TransientIOError,
)
from proposal_engine.nodes.timeouts import with_timeout
from proposal_engine.retry import RetryPolicy, with_retry
from proposal_engine.schemas.state import LoadingStatus, ProcessingStatus, WorkflowState

logger = logging.getLogger(__name__)


@dataclass
class LoadedDocument:
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


class DocumentSource(Protocol):
    """Anything that can resolve a document id into its text."""

    async def fetch(self, document_id: str) -> LoadedDocument: ...


class HttpDocumentSource:
    """
    DocumentSource backed by a document service.

    GET {base_url}/documents/{id} is expected to return
    {"text": "...", "metadata": {...}}.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout_seconds
        )

    async def fetch(self, document_id: str) -> LoadedDocument:
        response = await self._client.get(f"/documents/{quote(document_id, safe='')}")
        if response.status_code == 404:
            raise DocumentNotFoundError(f"Document '{document_id}' not found")
        if response.status_code in (401, 403):
            raise DocumentForbiddenError(f"Not allowed to read document '{document_id}'")
        response.raise_for_status()
        body = response.json()
        return LoadedDocument(text=body.get("text", ""), metadata=body.get("metadata") or {})

    async def close(self) -> None:
        await self._client.aclose()


def _failure(document_id: str | None, message: str) -> dict[str, Any]:
    logger.error(f"✗ Document load failed for {document_id}: {message}")
    return {
        "rfp_document": {"status": LoadingStatus.ERROR},
        "errors": [f"documentLoader: {message}"],
        "status": ProcessingStatus.ERROR,
    }


def document_loader_node(
    source: DocumentSource,
    retry_policy: RetryPolicy | None = None,
    timeout_seconds: float | None = 30.0,
):
    """
    Build the document-loading node.

    Args:
        source: Where documents come from
        retry_policy: Backoff for transient fetch failures
        timeout_seconds: Budget for a single fetch attempt

    Returns:
        Async node function
    """
    policy = retry_policy or RetryPolicy(max_attempts=3)

    async def load_document(state: WorkflowState) -> dict[str, Any]:
        document = state.rfp_document
        if document is None or not document.id:
            return _failure(None, "No document id provided")

        document_id = document.id
        logger.info(f"📄 Loading document {document_id}")

        async def fetch() -> LoadedDocument:
            return await with_timeout(
                source.fetch(document_id), timeout_seconds, what=f"fetch of {document_id}"
            )

        try:
            loaded = await with_retry(fetch, policy, description=f"load document {document_id}")
        except DocumentNotFoundError:
            return _failure(document_id, f"Document not found: {document_id}")
        except DocumentForbiddenError:
            return _failure(document_id, f"Access denied to document: {document_id}")
        except (TransientIOError, httpx.HTTPError) as e:
            return _failure(document_id, f"Failed to load document {document_id}: {e}")

        if isinstance(loaded, dict):
            loaded = LoadedDocument(text=loaded.get("text", ""), metadata=loaded.get("metadata") or {})

        logger.info(f"✓ Loaded document {document_id} ({len(loaded.text)} chars)")
        return {
            "rfp_document": {
                "text": loaded.text,
                "metadata": loaded.metadata,
                "status": LoadingStatus.LOADED,
            },
        }

    return load_document
