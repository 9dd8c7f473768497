"""Pair each lead with the processed design assigned to its business type."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping

from .models import DesignAssignment, Lead, ProcessedImage


@dataclass
class MatchedRecipient:
    lead: Lead
    front_url: str
    design_id: str


@dataclass
class MatchResult:
    matched: List[MatchedRecipient] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def match_recipients(
    leads: Iterable[Lead],
    assignments: Iterable[DesignAssignment],
    processed: Mapping[str, ProcessedImage],
) -> MatchResult:
    """Assign a design to every lead.

    The first assignment listing the lead's business type wins. A lead
    without a business type, without an assignment, or whose design has no
    processed asset is reported in ``errors`` and left out of ``matched``.
    """
    ordered = list(assignments)
    result = MatchResult()
    for lead in leads:
        assignment = None
        if lead.business_type:
            assignment = next((a for a in ordered if lead.business_type in a.business_types), None)
        asset = processed.get(assignment.design_id) if assignment is not None else None
        if asset is None:
            result.errors.append(f"No design found for lead {lead.id} (type: {lead.business_type})")
            continue
        result.matched.append(MatchedRecipient(lead=lead, front_url=asset.url, design_id=assignment.design_id))
    return result


def count_by_design(matched: Iterable[MatchedRecipient]) -> Dict[str, int]:
    """Return how many matched leads each design serves."""
    counts: Dict[str, int] = {}
    for item in matched:
        counts[item.design_id] = counts.get(item.design_id, 0) + 1
    return counts
