"""
Follow / Unfollow Service
=========================

Application-level entry points for subscribing to communities.

The counter itself is maintained by signals.py; this module only performs
the follower write inside transaction.atomic() so that the write and the
counter update are one unit, and turns expected outcomes (already
following, not following) into results instead of errors.

CONCURRENCY STRATEGY:
---------------------
Two requests following the same community at the same moment:
- The unique constraint (community, person) lets only one INSERT through
- The loser gets IntegrityError, its savepoint is rolled back, and since
  its post_save never ran the counter was never touched
- The counter UPDATE itself uses F('subscribers') + 1, so concurrent
  follows by different people serialize on the aggregate row lock
"""

import logging
from typing import Literal

from django.contrib.auth.models import User
from django.db import IntegrityError, transaction

from .exceptions import AggregatesMissing
from .models import Community, CommunityAggregates, CommunityFollower

logger = logging.getLogger(__name__)


class FollowResult:
    """Result of a follow operation."""
    def __init__(
        self,
        success: bool,
        action: Literal['created', 'removed', 'already_following', 'not_following'],
        subscribers: int
    ):
        self.success = success
        self.action = action
        self.subscribers = subscribers

    def __repr__(self):
        return f"FollowResult(action={self.action!r}, subscribers={self.subscribers})"


def get_subscriber_count(community_id: int) -> int:
    """Current value of community_aggregates.subscribers."""
    try:
        return CommunityAggregates.objects.values_list(
            'subscribers', flat=True
        ).get(community_id=community_id)
    except CommunityAggregates.DoesNotExist:
        raise AggregatesMissing(community_id)


def follow_community(user: User, community_id: int, pending: bool = False) -> FollowResult:
    """
    Subscribe a user to a community.

    OPERATION:
    1. Verify the community exists
    2. INSERT the follower row (post_save bumps subscribers)
    3. On IntegrityError the user already follows - nothing changes

    Any other failure (missing aggregate row, DB error) propagates and the
    INSERT is rolled back with it.
    """
    if not Community.objects.filter(id=community_id).exists():
        raise ValueError(f"Community {community_id} does not exist")

    try:
        with transaction.atomic():
            CommunityFollower.objects.create(
                community_id=community_id,
                person=user,
                pending=pending
            )
    except IntegrityError:
        # Only the unique (community, person) violation means "already
        # following"; anything else (e.g. the community was deleted after
        # the check above) is a real failure.
        if not CommunityFollower.objects.filter(
            community_id=community_id,
            person=user
        ).exists():
            raise
        return FollowResult(
            success=False,
            action='already_following',
            subscribers=get_subscriber_count(community_id)
        )

    logger.info("User %s followed community %s", user.pk, community_id)
    return FollowResult(
        success=True,
        action='created',
        subscribers=get_subscriber_count(community_id)
    )


def unfollow_community(user: User, community_id: int) -> FollowResult:
    """
    Remove a user's subscription.

    QuerySet.delete() goes through the deletion Collector, which sends
    post_delete per row (signals.py decrements subscribers) inside the
    same transaction as the DELETE.
    """
    if not Community.objects.filter(id=community_id).exists():
        raise ValueError(f"Community {community_id} does not exist")

    with transaction.atomic():
        deleted_count, _ = CommunityFollower.objects.filter(
            community_id=community_id,
            person=user
        ).delete()

    if deleted_count == 0:
        return FollowResult(
            success=False,
            action='not_following',
            subscribers=get_subscriber_count(community_id)
        )

    logger.info("User %s unfollowed community %s", user.pk, community_id)
    return FollowResult(
        success=True,
        action='removed',
        subscribers=get_subscriber_count(community_id)
    )
