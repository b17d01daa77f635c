"""
Django Signals for maintaining community_aggregates.subscribers.

This is the subscriber-count hook: every follower row INSERT adds one to its
community's counter, every DELETE removes one. Updates are ignored.

Atomicity:
----------
The counter update must commit or roll back together with the follower
write that caused it.

- INSERT: CommunityFollower.save() wraps save_base + post_save in
  transaction.atomic() (models.AtomicSaveMixin).
- DELETE: Django's deletion Collector already sends post_delete inside its
  own atomic block, for Model.delete(), QuerySet.delete() and cascades.

A failed UPDATE (missing aggregate row, deadlock, ...) is never caught here.
It propagates and the follower write is rolled back with it.

What does NOT go through these receivers:
- bulk_create() -> handled in CommunityFollowerQuerySet.bulk_create()
- QuerySet.update() / raw SQL -> not covered; reconcile.py repairs drift
"""

import logging

from django.db import models
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .models import Community, CommunityAggregates, CommunityFollower

logger = logging.getLogger(__name__)


def _is_community_deletion(origin) -> bool:
    """True if the delete was started on a Community (instance or queryset)."""
    if isinstance(origin, Community):
        return True
    return isinstance(origin, models.QuerySet) and issubclass(origin.model, Community)


@receiver(post_save, sender=Community)
def create_community_aggregates(sender, instance, created, using, raw=False, **kwargs):
    """Every new community starts with an aggregate row at zero."""
    if raw or not created:
        return
    CommunityAggregates.objects.using(using).create(community=instance)


@receiver(post_save, sender=CommunityFollower)
def increment_subscribers(sender, instance, created, using, raw=False, **kwargs):
    """
    Follower row inserted -> subscribers + 1.

    Re-saving an existing row (e.g. pending -> accepted) is not an insert
    and leaves the counter alone, even if community_id was changed.
    """
    if raw or not created:
        return
    CommunityAggregates.objects.db_manager(using).adjust_subscribers(instance.community_id, 1)
    logger.debug("community %s: subscribers +1 (person %s)",
                 instance.community_id, instance.person_id)


@receiver(post_delete, sender=CommunityFollower)
def decrement_subscribers(sender, instance, using, origin=None, **kwargs):
    """
    Follower row deleted -> subscribers - 1.

    No floor at zero. When the whole community is being deleted its
    aggregate row goes in the same Collector run (possibly before the
    followers), so there is nothing to decrement.
    """
    if _is_community_deletion(origin):
        return
    CommunityAggregates.objects.db_manager(using).adjust_subscribers(instance.community_id, -1)
    logger.debug("community %s: subscribers -1 (person %s)",
                 instance.community_id, instance.person_id)
