"""
Case summary aggregation.

Pure read-side projection of lines, matches and discrepancies into a
CaseSummary. No I/O; identical input gives an identical summary.
"""

from decimal import Decimal
from typing import Dict, Iterable, Set

from soa_recon.reconciliation.models import CaseSummary, Discrepancy, Match, SOALine
from soa_recon.reconciliation.registry import MatchStatus


ZERO = Decimal("0")


def active_matches_by_line(matches: Iterable[Match]) -> Dict[str, Match]:
    """Map soa_item_id to its non-rejected match. Confirmed wins over pending."""
    active: Dict[str, Match] = {}
    for match in matches:
        if not match.is_active:
            continue
        current = active.get(match.soa_item_id)
        if current is None or (
            current.status != MatchStatus.CONFIRMED and match.status == MatchStatus.CONFIRMED
        ):
            active[match.soa_item_id] = match
    return active


def summarize(
    lines: Iterable[SOALine],
    matches: Iterable[Match],
    discrepancies: Iterable[Discrepancy] = (),
) -> CaseSummary:
    """
    Compute case-level totals.

    - matched: lines whose active match is confirmed
    - pending: lines whose active match is still pending
    - unmatched: lines with no active match
    - discrepancy: distinct lines referenced by open discrepancies
    - net_variance: total_amount - matched_amount
    """
    lines = list(lines)
    active = active_matches_by_line(matches)
    open_discrepancies = [d for d in discrepancies if d.is_open]

    line_ids = {line.id for line in lines}
    flagged: Set[str] = set()
    for discrepancy in open_discrepancies:
        flagged.update(i for i in discrepancy.line_ids if i in line_ids)

    total_amount = matched_amount = pending_amount = unmatched_amount = discrepancy_amount = ZERO
    matched_lines = pending_lines = unmatched_lines = 0

    for line in lines:
        total_amount += line.amount
        match = active.get(line.id)
        if match is None:
            unmatched_lines += 1
            unmatched_amount += line.amount
        elif match.status == MatchStatus.CONFIRMED:
            matched_lines += 1
            matched_amount += line.amount
        else:
            pending_lines += 1
            pending_amount += line.amount
        if line.id in flagged:
            discrepancy_amount += line.amount

    return CaseSummary(
        total_lines=len(lines),
        total_amount=total_amount,
        matched_lines=matched_lines,
        matched_amount=matched_amount,
        pending_lines=pending_lines,
        pending_amount=pending_amount,
        unmatched_lines=unmatched_lines,
        unmatched_amount=unmatched_amount,
        discrepancy_lines=len(flagged),
        discrepancy_amount=discrepancy_amount,
        open_discrepancies=len(open_discrepancies),
        net_variance=total_amount - matched_amount,
    )
