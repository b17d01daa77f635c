"""
Data Models for Community Subscriptions
=======================================

Three tables:

1. Community - the thing people subscribe to
2. CommunityFollower - one row per (community, person) subscription
3. CommunityAggregates - denormalized per-community counters

The subscribers counter is maintained incrementally:
- Follower INSERT -> subscribers + 1   (signals.py, post_save)
- Follower DELETE -> subscribers - 1   (signals.py, post_delete)
- Follower UPDATE -> nothing

The counter is never recomputed on the write path. reconcile.py can
recompute it from the follower rows when it drifts.

The counter is a plain signed IntegerField on purpose: a decrement below
zero is stored as-is instead of failing a CHECK constraint.
"""

from collections import Counter

from django.conf import settings
from django.db import models, router, transaction
from django.db.models import F
from django.utils import timezone

from .exceptions import AggregatesMissing


class AtomicSaveMixin:
    """
    Run save() and its post_save receivers in one atomic block.

    Django sends post_save after the INSERT has left save_base's own
    transaction handling, so in autocommit mode the row would already be
    committed when the counter update runs. Wrapping save() keeps them
    together: if a receiver raises, the INSERT is rolled back too.
    """

    def save(self, *args, **kwargs):
        # Same alias Model.save() will write to; positional form is
        # save(force_insert, force_update, using, update_fields)
        using = kwargs.get('using')
        if using is None and len(args) > 2:
            using = args[2]
        using = using or router.db_for_write(type(self), instance=self)
        with transaction.atomic(using=using):
            super().save(*args, **kwargs)


class Community(AtomicSaveMixin, models.Model):
    """A community users can subscribe to."""
    name = models.CharField(max_length=255, unique=True)
    title = models.CharField(max_length=255)
    # False for communities mirrored from another instance
    local = models.BooleanField(default=True)
    published = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'community'

    def __str__(self):
        return self.name


class CommunityAggregatesManager(models.Manager):

    def adjust_subscribers(self, community_id: int, delta: int) -> None:
        """
        Apply `subscribers = subscribers + delta` to one aggregate row.

        Single UPDATE with an F() expression, so concurrent follows on the
        same community serialize on the row lock instead of losing updates:

            UPDATE community_aggregates
            SET subscribers = subscribers + %s
            WHERE community_id = %s

        Raises AggregatesMissing when no row matched.
        """
        updated = self.filter(community_id=community_id).update(
            subscribers=F('subscribers') + delta
        )
        if updated == 0:
            raise AggregatesMissing(community_id)


class CommunityAggregates(models.Model):
    """
    Denormalized counters for a community.

    One row per community, created alongside the community (signals.py)
    and deleted with it. Only the follower hooks write `subscribers`.
    """
    community = models.OneToOneField(
        Community,
        on_delete=models.CASCADE,
        primary_key=True,
        related_name='aggregates'
    )
    subscribers = models.IntegerField(default=0)

    objects = CommunityAggregatesManager()

    class Meta:
        db_table = 'community_aggregates'
        verbose_name_plural = 'community aggregates'

    def __str__(self):
        return f"{self.community_id}: {self.subscribers} subscribers"


class CommunityFollowerQuerySet(models.QuerySet):

    def bulk_create(self, objs, *args, **kwargs):
        """
        bulk_create() does not send post_save, so counters are applied here.

        One UPDATE per distinct community, in the same atomic block as the
        INSERT. Conflict-skipping modes are refused: with them we can't tell
        which rows were actually inserted.
        """
        if kwargs.get('ignore_conflicts') or kwargs.get('update_conflicts'):
            raise ValueError(
                "CommunityFollower.bulk_create() does not support "
                "ignore_conflicts/update_conflicts; subscriber counts would drift."
            )
        objs = list(objs)
        with transaction.atomic(using=self.db):
            created = super().bulk_create(objs, *args, **kwargs)
            per_community = Counter(obj.community_id for obj in created)
            aggregates = CommunityAggregates.objects.db_manager(self.db)
            for community_id, count in sorted(per_community.items()):
                aggregates.adjust_subscribers(community_id, count)
        return created


class CommunityFollower(AtomicSaveMixin, models.Model):
    """
    A person's subscription to a community.

    Presence of the row is the subscription. `pending` marks a follow that
    has been sent to a remote community and not yet accepted; pending rows
    still count towards subscribers.
    """
    community = models.ForeignKey(
        Community,
        on_delete=models.CASCADE,
        related_name='followers'
    )
    person = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='community_follows'
    )
    pending = models.BooleanField(default=False)
    published = models.DateTimeField(default=timezone.now)

    objects = CommunityFollowerQuerySet.as_manager()

    class Meta:
        db_table = 'community_follower'
        constraints = [
            # A person follows a community at most once
            models.UniqueConstraint(
                fields=['community', 'person'],
                name='unique_follower_per_community'
            )
        ]

    def __str__(self):
        return f"{self.person_id} follows {self.community_id}"
