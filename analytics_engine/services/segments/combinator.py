"""Logic combinator for per-condition identity sets."""

from typing import Iterable, Set

from analytics_engine.schemas.segment import CriteriaLogic
from analytics_engine.services.segments.identity import Identity


def combine(sets: Iterable[Set[Identity]], logic: CriteriaLogic) -> Set[Identity]:
    """AND intersects, OR unions. Order of the sets never matters; no sets -> empty."""
    sets = list(sets)
    if not sets:
        return set()
    if logic == CriteriaLogic.AND:
        return set(sets[0]).intersection(*sets[1:])
    return set().union(*sets)
