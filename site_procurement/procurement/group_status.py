from __future__ import annotations

from typing import Iterable

from site_procurement.procurement.flow_policy import PARTIALLY_PROCESSED, UNDECIDED_STATUSES


def derive_group_status(statuses: Iterable[str]) -> str | None:
    """Status shown for a whole request number.

    All members agree: that status. Mixed, with at least one member past
    ``pending``/``draft``: ``partially_processed``. Mixed ``pending``/``draft``: ``None``.
    """
    values = [str(status) for status in statuses if status]
    if not values:
        return None
    distinct = set(values)
    if len(distinct) == 1:
        return values[0]
    if distinct - UNDECIDED_STATUSES:
        return PARTIALLY_PROCESSED
    return None
