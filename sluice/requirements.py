from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from sluice.conditions import MISSING, resolve_path
from sluice.model import Stage


class RequirementsReport(BaseModel):
    met: bool
    missing_documents: list[str] = []
    unverified_documents: list[str] = []
    missing_actions: list[str] = []


def _documents(context: Any) -> dict[str, bool]:
    """document_type -> verified, from ``context["documents"]``."""
    raw = resolve_path(context, "documents")
    if raw is MISSING or not isinstance(raw, (list, tuple)):
        return {}
    found: dict[str, bool] = {}
    for doc in raw:
        if isinstance(doc, str):
            found.setdefault(doc, False)
        elif isinstance(doc, Mapping) and "document_type" in doc:
            doc_type = doc["document_type"]
            found[doc_type] = found.get(doc_type, False) or bool(doc.get("verified"))
    return found


def evaluate_stage_requirements(stage: Stage, context: Any) -> RequirementsReport:
    """Report which of the stage's required documents and actions are outstanding.

    Informational only: transitions are gated by their conditions, not by this
    report.
    """
    documents = _documents(context)
    missing_documents = sorted(d for d in stage.required_documents if d not in documents)
    unverified = sorted(
        d for d in stage.required_documents if d in documents and not documents[d]
    )

    completed = resolve_path(context, "completed_actions")
    if completed is MISSING or not isinstance(completed, (list, tuple, set, frozenset)):
        completed = ()
    missing_actions = sorted(a for a in stage.required_actions if a not in completed)

    return RequirementsReport(
        met=not (missing_documents or unverified or missing_actions),
        missing_documents=missing_documents,
        unverified_documents=unverified,
        missing_actions=missing_actions,
    )
