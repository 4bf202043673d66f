"""
Identity resolution: correlate master entities with canonical facts.

Outer correlation: every eligible master produces exactly one
ResolvedState for the analysis date, with or without a fact. "No
observation" (nobody clocked in) is kept distinct from "observation says
absent".

Latest-wins: when several facts share an (entity, period) key, the one
with the greatest observed_at wins; ties go to the later arrival (source
order as given, then in-batch sequence).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional

from canonical_schema import CanonicalFact, MasterRecord, ResolvedState
from shared import EmptyMasterSetError, OrphanReferenceError, entity_classifier

logger = logging.getLogger(__name__)

PERIOD_DAY = "day"
PERIOD_TO_DATE = "to_date"


@dataclass
class Resolution:
    analysis_date: date
    states: list[ResolvedState] = field(default_factory=list)
    terminated: list[MasterRecord] = field(default_factory=list)
    terminated_today: list[MasterRecord] = field(default_factory=list)
    orphans: list[OrphanReferenceError] = field(default_factory=list)
    out_of_scope_count: int = 0
    inactive_count: int = 0
    categories: dict = field(default_factory=dict)

    @property
    def orphan_count(self) -> int:
        return len(self.orphans)

    @property
    def orphan_entities(self) -> list[str]:
        return sorted({o.entity_id for o in self.orphans})

    def by_category(self) -> dict[str, list[ResolvedState]]:
        grouped = defaultdict(list)
        for state in self.states:
            grouped[state.category].append(state)
        return dict(sorted(grouped.items()))

    def terminated_today_by_category(self) -> dict[str, int]:
        counts = defaultdict(int)
        for master in self.terminated_today:
            category = self.categories.get(master.entity_id)
            if category is not None:
                counts[category] += 1
        return dict(counts)


def _as_date(value) -> date:
    return value.date() if hasattr(value, "date") and callable(value.date) else value


def masters_in_force(masters, analysis_date):
    """One master per entity: the latest valid_from on or before the
    analysis date. Rows without valid_from are always in force; among
    equal keys the later row wins."""
    chosen = {}
    for order, master in enumerate(masters):
        if master.valid_from is not None and master.valid_from > analysis_date:
            continue
        key = (master.valid_from or date.min, order)
        current = chosen.get(master.entity_id)
        if current is None or key >= current[0]:
            chosen[master.entity_id] = (key, master)
    return {eid: m for eid, (_, m) in chosen.items()}


def latest_wins(facts):
    """Pick the authoritative fact from competing observations.

    `facts` are (arrival_rank, fact) pairs. Max observed_at wins; ties go
    to the higher arrival rank.
    """
    best = None
    for rank, fact in facts:
        key = (fact.observed_at, rank)
        if best is None or key > best[0]:
            best = (key, fact)
    return best[1] if best else None


def _arrival_ranked(facts_by_source):
    """Flatten sources into (arrival_rank, fact) in arrival order."""
    if isinstance(facts_by_source, dict):
        batches = list(facts_by_source.values())
    elif facts_by_source and isinstance(facts_by_source[0], CanonicalFact):
        batches = [facts_by_source]
    else:
        batches = list(facts_by_source or [])
    ranked = []
    for source_rank, batch in enumerate(batches):
        for fact in batch:
            ranked.append(((source_rank, fact.sequence), fact))
    return ranked


def resolve(masters, facts_by_source, analysis_date, classifier: Optional[Callable] = None,
            period=PERIOD_DAY):
    """Correlate masters with facts for one analysis date.

    masters: iterable of MasterRecord.
    facts_by_source: {source_name: [CanonicalFact]} or a list of fact lists
        (or one flat list). Earlier sources rank as earlier arrivals.
    classifier: MasterRecord -> category | None. None puts the entity out
        of scope for this report.
    period: "day" matches facts whose period_date is the analysis date;
        "to_date" takes the latest fact on or before it.

    Raises EmptyMasterSetError when there is no master data at all.
    """
    analysis_date = _as_date(analysis_date)
    classifier = classifier or entity_classifier
    masters = list(masters or [])
    if not masters:
        raise EmptyMasterSetError(f"No master records available for {analysis_date}")

    in_force = masters_in_force(masters, analysis_date)
    known_ids = {m.entity_id for m in masters}
    result = Resolution(analysis_date=analysis_date)

    candidates = defaultdict(list)
    for rank, fact in _arrival_ranked(facts_by_source):
        if fact.entity_id not in known_ids:
            result.orphans.append(OrphanReferenceError(fact))
            continue
        if period == PERIOD_DAY and fact.period_date != analysis_date:
            continue
        if period == PERIOD_TO_DATE and fact.period_date > analysis_date:
            continue
        candidates[fact.entity_id].append((rank, fact))

    for entity_id in sorted(in_force):
        master = in_force[entity_id]
        category = classifier(master)
        if category is None:
            result.out_of_scope_count += 1
            continue
        result.categories[entity_id] = category

        term_date = master.termination_date()
        if term_date is not None and term_date <= analysis_date:
            result.terminated.append(master)
            if term_date == analysis_date:
                result.terminated_today.append(master)
            continue
        if not master.active:
            result.inactive_count += 1
            continue

        result.states.append(ResolvedState(
            entity_id=entity_id,
            analysis_date=analysis_date,
            category=category,
            master=master,
            fact=latest_wins(candidates.get(entity_id, [])),
        ))

    if result.orphans:
        logger.warning("%d fact(s) reference unknown entities: %s", result.orphan_count,
                       ", ".join(result.orphan_entities[:10]))
    return result
