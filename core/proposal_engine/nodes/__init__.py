"""Helpers for nodes that call external collaborators."""

from proposal_engine.nodes.content import call_collaborator, content_node, human_review_node
from proposal_engine.nodes.document_loader import (
    DocumentSource,
    HttpDocumentSource,
    LoadedDocument,
    document_loader_node,
)
from proposal_engine.nodes.parsing import extract_structured
from proposal_engine.nodes.timeouts import with_timeout

__all__ = [
    "call_collaborator",
    "content_node",
    "human_review_node",
    "DocumentSource",
    "HttpDocumentSource",
    "LoadedDocument",
    "document_loader_node",
    "extract_structured",
    "with_timeout",
]
