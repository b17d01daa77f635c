"""
Subscriber Count Reconciliation
===============================

The write path never recomputes subscribers, it only applies +1/-1. The
counter drifts if follower rows change without going through the ORM hooks:
raw SQL, QuerySet.update() moving rows between communities, a restore that
skipped the aggregate table.

This module recomputes the true value from community_follower:

    SELECT c.id,
           a.subscribers,
           (SELECT COUNT(*) FROM community_follower f
             WHERE f.community_id = c.id) AS actual
    FROM community c
    LEFT JOIN community_aggregates a ON a.community_id = c.id

and writes it back where it differs. A NULL a.subscribers means the
aggregate row is missing, which makes every follow/unfollow on that
community fail until ensure_aggregates() recreates it.

It is a maintenance tool, not part of the follow/unfollow path.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from django.db import transaction
from django.db.models import Count, F, IntegerField, OuterRef, Subquery, Value
from django.db.models.functions import Coalesce

from .models import Community, CommunityAggregates, CommunityFollower

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Drift:
    community_id: int
    # None when the community has no aggregate row
    stored: Optional[int]
    actual: int

    @property
    def missing(self) -> bool:
        return self.stored is None

    @property
    def delta(self) -> int:
        return self.actual - (self.stored or 0)


def ensure_aggregates(community_ids: Optional[Iterable[int]] = None) -> int:
    """
    Create aggregate rows for communities that have none.

    New rows start at zero; run recount_subscribers() over the same
    communities afterwards to fill them in. Returns the number of rows
    created.
    """
    qs = Community.objects.filter(aggregates__isnull=True)
    if community_ids is not None:
        qs = qs.filter(id__in=list(community_ids))
    missing = list(qs.values_list('id', flat=True))

    CommunityAggregates.objects.bulk_create(
        [CommunityAggregates(community_id=community_id) for community_id in missing]
    )
    if missing:
        logger.warning("Created %d missing community_aggregates rows", len(missing))
    return len(missing)


def find_drift(community_ids: Optional[Iterable[int]] = None) -> List[Drift]:
    """
    Communities whose stored subscribers differs from their follower count.

    Communities without an aggregate row are reported with stored=None.
    """
    follower_count = (
        CommunityFollower.objects
        .filter(community_id=OuterRef('pk'))
        .order_by()
        .values('community_id')
        .annotate(total=Count('id'))
        .values('total')
    )
    qs = Community.objects.annotate(
        stored=F('aggregates__subscribers'),
        actual=Coalesce(
            Subquery(follower_count, output_field=IntegerField()),
            Value(0)
        )
    )
    if community_ids is not None:
        qs = qs.filter(id__in=list(community_ids))

    return [
        Drift(community_id=row['id'], stored=row['stored'], actual=row['actual'])
        for row in qs.order_by('id').values('id', 'stored', 'actual')
        if row['stored'] != row['actual']
    ]


def recount_subscribers(
    community_ids: Optional[Iterable[int]] = None,
    dry_run: bool = False
) -> List[Drift]:
    """
    Rewrite subscribers for every drifting community.

    Each community is fixed in its own transaction with the aggregate row
    locked, and the count is taken again under the lock so a follow that
    committed after find_drift() is not overwritten. Communities without an
    aggregate row are skipped; call ensure_aggregates() first.

    Returns the drifts found with dry_run, otherwise the values written.
    """
    drifts = find_drift(community_ids)
    if dry_run:
        return drifts

    fixed = []
    for drift in drifts:
        with transaction.atomic():
            aggregates = (
                CommunityAggregates.objects
                .select_for_update()
                .filter(community_id=drift.community_id)
                .first()
            )
            if aggregates is None:
                logger.warning(
                    "community %s: no aggregate row, not recounted",
                    drift.community_id
                )
                continue
            actual = CommunityFollower.objects.filter(
                community_id=drift.community_id
            ).count()
            CommunityAggregates.objects.filter(
                community_id=drift.community_id
            ).update(subscribers=actual)

        fixed.append(Drift(
            community_id=drift.community_id,
            stored=aggregates.subscribers,
            actual=actual
        ))
        logger.warning(
            "community %s: subscribers %d -> %d",
            drift.community_id, aggregates.subscribers, actual
        )
    return fixed
