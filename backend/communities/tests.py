"""
Tests for community subscriber counts

Focus areas:
1. Follower insert/delete keeps community_aggregates.subscribers in sync
2. A failed counter update rolls back the follower write
3. Follow service outcomes (duplicate follow, unfollow)
4. Reconciliation of drifted counters
"""

from io import StringIO
from unittest.mock import call, patch

from django.contrib.auth.models import User
from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.test import TestCase, TransactionTestCase

from .exceptions import AggregatesMissing
from .models import Community, CommunityAggregates, CommunityFollower
from .reconcile import Drift, ensure_aggregates, find_drift, recount_subscribers
from .services import follow_community, get_subscriber_count, unfollow_community


def set_subscribers(community_id, value):
    CommunityAggregates.objects.filter(community_id=community_id).update(subscribers=value)


class SubscriberCountTestCase(TestCase):
    """
    Test the post_save / post_delete hooks on CommunityFollower.

    CRITICAL: These tests verify that:
    1. Insert adds exactly 1 to the follower's community only
    2. Delete removes exactly 1
    3. Updates never touch the counter
    """

    def setUp(self):
        self.users = [
            User.objects.create_user(f'user{i}', f'u{i}@test.com', 'pass')
            for i in range(5)
        ]
        self.community42 = Community.objects.create(id=42, name='c42', title='Community 42')
        self.community7 = Community.objects.create(id=7, name='c7', title='Community 7')

    def test_new_community_gets_aggregate_row(self):
        """Creating a community creates its aggregate row at zero."""
        aggregates = CommunityAggregates.objects.get(community=self.community42)
        self.assertEqual(aggregates.subscribers, 0)

    def test_insert_increments_only_its_community(self):
        set_subscribers(42, 5)
        set_subscribers(7, 3)

        CommunityFollower.objects.create(community=self.community42, person=self.users[0])

        self.assertEqual(get_subscriber_count(42), 6)
        self.assertEqual(get_subscriber_count(7), 3)

    def test_delete_decrements(self):
        follower = CommunityFollower.objects.create(community=self.community7, person=self.users[0])
        self.assertEqual(get_subscriber_count(7), 1)

        follower.delete()

        self.assertEqual(get_subscriber_count(7), 0)

    def test_insert_then_delete_restores_count(self):
        """Community 42 at 5 -> follow -> 6 -> unfollow -> 5."""
        set_subscribers(42, 5)

        follower = CommunityFollower.objects.create(community_id=42, person=self.users[0])
        self.assertEqual(get_subscriber_count(42), 6)

        follower.delete()
        self.assertEqual(get_subscriber_count(42), 5)

    def test_three_inserts_one_delete(self):
        """Community 7 at 0 -> three follows, one unfollow -> 2."""
        followers = [
            CommunityFollower.objects.create(community_id=7, person=user)
            for user in self.users[:3]
        ]
        followers[0].delete()

        self.assertEqual(get_subscriber_count(7), 2)

    def test_inserts_and_deletes_sequence(self):
        """N inserts and M deletes leave initial + N - M."""
        set_subscribers(42, 10)
        followers = [
            CommunityFollower.objects.create(community_id=42, person=user)
            for user in self.users
        ]
        for follower in followers[:3]:
            follower.delete()

        self.assertEqual(get_subscriber_count(42), 10 + 5 - 3)

    def test_update_does_not_change_count(self):
        follower = CommunityFollower.objects.create(
            community=self.community42, person=self.users[0], pending=True
        )
        self.assertEqual(get_subscriber_count(42), 1)

        follower.pending = False
        follower.save()

        self.assertEqual(get_subscriber_count(42), 1)

    def test_update_moving_community_is_ignored(self):
        """Re-pointing a row to another community is an update, not insert/delete."""
        follower = CommunityFollower.objects.create(community=self.community42, person=self.users[0])

        follower.community = self.community7
        follower.save()

        self.assertEqual(get_subscriber_count(42), 1)
        self.assertEqual(get_subscriber_count(7), 0)

    def test_decrement_is_not_clamped_at_zero(self):
        follower = CommunityFollower.objects.create(community=self.community7, person=self.users[0])
        set_subscribers(7, 0)

        follower.delete()

        self.assertEqual(get_subscriber_count(7), -1)

    def test_queryset_delete_decrements_per_row(self):
        for user in self.users[:4]:
            CommunityFollower.objects.create(community=self.community42, person=user)

        CommunityFollower.objects.filter(
            community=self.community42, person__in=self.users[:2]
        ).delete()

        self.assertEqual(get_subscriber_count(42), 2)

    def test_user_deletion_decrements_followed_communities(self):
        user = self.users[0]
        CommunityFollower.objects.create(community=self.community42, person=user)
        CommunityFollower.objects.create(community=self.community7, person=user)
        CommunityFollower.objects.create(community=self.community7, person=self.users[1])

        user.delete()

        self.assertEqual(get_subscriber_count(42), 0)
        self.assertEqual(get_subscriber_count(7), 1)

    def test_community_deletion_cascades_without_error(self):
        for user in self.users[:3]:
            CommunityFollower.objects.create(community=self.community42, person=user)

        self.community42.delete()

        self.assertFalse(CommunityFollower.objects.filter(community_id=42).exists())
        self.assertFalse(CommunityAggregates.objects.filter(community_id=42).exists())

    def test_community_queryset_deletion_cascades_without_error(self):
        CommunityFollower.objects.create(community=self.community7, person=self.users[0])
        CommunityFollower.objects.create(community=self.community42, person=self.users[0])

        Community.objects.filter(id=7).delete()

        self.assertFalse(CommunityAggregates.objects.filter(community_id=7).exists())
        self.assertEqual(get_subscriber_count(42), 1)

    def test_bulk_create_updates_counts(self):
        """bulk_create() skips post_save, so the queryset applies the counts."""
        CommunityFollower.objects.bulk_create([
            CommunityFollower(community=self.community42, person=self.users[0]),
            CommunityFollower(community=self.community42, person=self.users[1]),
            CommunityFollower(community=self.community7, person=self.users[0]),
        ])

        self.assertEqual(get_subscriber_count(42), 2)
        self.assertEqual(get_subscriber_count(7), 1)

    def test_bulk_create_rejects_ignore_conflicts(self):
        with self.assertRaises(ValueError):
            CommunityFollower.objects.bulk_create(
                [CommunityFollower(community=self.community42, person=self.users[0])],
                ignore_conflicts=True
            )
        self.assertEqual(CommunityFollower.objects.count(), 0)
        self.assertEqual(get_subscriber_count(42), 0)

    def test_raw_save_leaves_counters_alone(self):
        """Fixture loading (raw=True) creates no aggregate row and counts nothing."""
        set_subscribers(42, 3)

        Community(id=5, name='fixture', title='Loaded').save_base(raw=True)
        CommunityFollower(community_id=42, person=self.users[0]).save_base(raw=True)

        self.assertFalse(CommunityAggregates.objects.filter(community_id=5).exists())
        self.assertTrue(CommunityFollower.objects.filter(community_id=42).exists())
        self.assertEqual(get_subscriber_count(42), 3)

    def test_save_opens_atomic_block_on_write_alias(self):
        with patch('communities.models.transaction.atomic', wraps=transaction.atomic) as atomic:
            CommunityFollower(community=self.community42, person=self.users[0]).save()

        self.assertEqual(atomic.call_args_list[0], call(using='default'))
        self.assertEqual(get_subscriber_count(42), 1)


class MissingAggregatesTestCase(TransactionTestCase):
    """
    A failed counter update must fail the follower write with it.

    TransactionTestCase so each write runs in autocommit, the way it does
    in production, and rollback is observable.
    """

    def setUp(self):
        self.user = User.objects.create_user('user', 'u@test.com', 'pass')
        self.community = Community.objects.create(name='c', title='Community')

    def test_insert_rolled_back_when_aggregate_row_missing(self):
        CommunityAggregates.objects.filter(community=self.community).delete()

        with self.assertRaises(AggregatesMissing) as ctx:
            CommunityFollower.objects.create(community=self.community, person=self.user)

        self.assertEqual(ctx.exception.community_id, self.community.id)
        self.assertFalse(CommunityFollower.objects.exists())

    def test_delete_rolled_back_when_aggregate_row_missing(self):
        follower = CommunityFollower.objects.create(community=self.community, person=self.user)
        CommunityAggregates.objects.filter(community=self.community).delete()

        with self.assertRaises(AggregatesMissing):
            follower.delete()

        self.assertTrue(CommunityFollower.objects.filter(id=follower.id).exists())

    def test_bulk_create_rolled_back_when_aggregate_row_missing(self):
        other = Community.objects.create(name='other', title='Other')
        CommunityAggregates.objects.filter(community=self.community).delete()

        with self.assertRaises(AggregatesMissing):
            CommunityFollower.objects.bulk_create([
                CommunityFollower(community=other, person=self.user),
                CommunityFollower(community=self.community, person=self.user),
            ])

        self.assertFalse(CommunityFollower.objects.exists())
        self.assertEqual(get_subscriber_count(other.id), 0)

    def test_follow_service_propagates_failure(self):
        CommunityAggregates.objects.filter(community=self.community).delete()

        with self.assertRaises(AggregatesMissing):
            follow_community(self.user, self.community.id)

        self.assertFalse(CommunityFollower.objects.exists())


class FollowServiceTestCase(TransactionTestCase):
    """Test follow/unfollow outcomes."""

    def setUp(self):
        self.user = User.objects.create_user('user', 'u@test.com', 'pass')
        self.other = User.objects.create_user('other', 'o@test.com', 'pass')
        self.community = Community.objects.create(name='c', title='Community')

    def test_follow(self):
        result = follow_community(self.user, self.community.id)

        self.assertTrue(result.success)
        self.assertEqual(result.action, 'created')
        self.assertEqual(result.subscribers, 1)

    def test_cannot_follow_twice(self):
        """Second follow fails gracefully and does not double count."""
        result1 = follow_community(self.user, self.community.id)
        result2 = follow_community(self.user, self.community.id)

        self.assertEqual(result1.action, 'created')
        self.assertEqual(result2.action, 'already_following')
        self.assertFalse(result2.success)
        self.assertEqual(result2.subscribers, 1)
        self.assertEqual(CommunityFollower.objects.count(), 1)

    def test_pending_follow_counts(self):
        result = follow_community(self.user, self.community.id, pending=True)

        self.assertEqual(result.subscribers, 1)
        self.assertTrue(CommunityFollower.objects.get(person=self.user).pending)

    def test_follow_unfollow_follow(self):
        follow_community(self.user, self.community.id)
        follow_community(self.other, self.community.id)

        result = unfollow_community(self.user, self.community.id)
        self.assertEqual(result.action, 'removed')
        self.assertEqual(result.subscribers, 1)

        result = follow_community(self.user, self.community.id)
        self.assertEqual(result.action, 'created')
        self.assertEqual(result.subscribers, 2)

    def test_unfollow_when_not_following(self):
        result = unfollow_community(self.user, self.community.id)

        self.assertFalse(result.success)
        self.assertEqual(result.action, 'not_following')
        self.assertEqual(result.subscribers, 0)

    def test_unknown_community(self):
        with self.assertRaises(ValueError):
            follow_community(self.user, 999999)
        with self.assertRaises(ValueError):
            unfollow_community(self.user, 999999)

    def test_get_subscriber_count_missing_row(self):
        CommunityAggregates.objects.filter(community=self.community).delete()

        with self.assertRaises(AggregatesMissing):
            get_subscriber_count(self.community.id)

    def test_follow_reraises_unrelated_integrity_error(self):
        """Only a duplicate follow is reported as already_following."""
        with patch.object(
            CommunityFollower.objects, 'create',
            side_effect=IntegrityError('FOREIGN KEY constraint failed')
        ):
            with self.assertRaises(IntegrityError):
                follow_community(self.user, self.community.id)

        self.assertEqual(get_subscriber_count(self.community.id), 0)


class ReconcileTestCase(TestCase):
    """Test recomputing subscribers from follower rows."""

    def setUp(self):
        self.users = [
            User.objects.create_user(f'user{i}', f'u{i}@test.com', 'pass')
            for i in range(3)
        ]
        self.community1 = Community.objects.create(name='c1', title='One')
        self.community2 = Community.objects.create(name='c2', title='Two')
        for user in self.users:
            CommunityFollower.objects.create(community=self.community1, person=user)
        CommunityFollower.objects.create(community=self.community2, person=self.users[0])

    def test_no_drift(self):
        self.assertEqual(find_drift(), [])

    def test_find_drift(self):
        set_subscribers(self.community1.id, 7)

        drifts = find_drift()

        self.assertEqual(drifts, [Drift(community_id=self.community1.id, stored=7, actual=3)])
        self.assertEqual(drifts[0].delta, -4)

    def test_find_drift_counts_communities_without_followers(self):
        empty = Community.objects.create(name='empty', title='Empty')
        set_subscribers(empty.id, -2)

        self.assertEqual(find_drift([empty.id]), [Drift(community_id=empty.id, stored=-2, actual=0)])

    def test_recount_fixes_drift(self):
        set_subscribers(self.community1.id, 0)
        set_subscribers(self.community2.id, 4)

        fixed = recount_subscribers()

        self.assertEqual(len(fixed), 2)
        self.assertEqual(get_subscriber_count(self.community1.id), 3)
        self.assertEqual(get_subscriber_count(self.community2.id), 1)

    def test_recount_limited_to_communities(self):
        set_subscribers(self.community1.id, 0)
        set_subscribers(self.community2.id, 4)

        recount_subscribers(community_ids=[self.community2.id])

        self.assertEqual(get_subscriber_count(self.community1.id), 0)
        self.assertEqual(get_subscriber_count(self.community2.id), 1)

    def test_dry_run_does_not_write(self):
        set_subscribers(self.community1.id, 0)

        drifts = recount_subscribers(dry_run=True)

        self.assertEqual(len(drifts), 1)
        self.assertEqual(get_subscriber_count(self.community1.id), 0)

    def test_ensure_aggregates(self):
        CommunityAggregates.objects.filter(community=self.community2).delete()

        self.assertEqual(ensure_aggregates(), 1)
        self.assertEqual(get_subscriber_count(self.community2.id), 0)
        self.assertEqual(ensure_aggregates(), 0)

    def test_recount_command(self):
        CommunityAggregates.objects.filter(community=self.community2).delete()
        set_subscribers(self.community1.id, 9)
        out = StringIO()

        call_command('recount_subscribers', stdout=out)

        self.assertIn('Created 1 missing aggregate rows', out.getvalue())
        self.assertIn('Fixed 2 communities', out.getvalue())
        self.assertEqual(get_subscriber_count(self.community1.id), 3)
        self.assertEqual(get_subscriber_count(self.community2.id), 1)

    def test_recount_command_dry_run(self):
        set_subscribers(self.community1.id, 9)
        out = StringIO()

        call_command('recount_subscribers', '--dry-run', stdout=out)

        self.assertIn(f'community {self.community1.id}: 9 -> 3 (-6)', out.getvalue())
        self.assertEqual(get_subscriber_count(self.community1.id), 9)

    def test_find_drift_reports_missing_aggregate_row(self):
        CommunityAggregates.objects.filter(community=self.community1).delete()

        drifts = find_drift()

        self.assertEqual(drifts, [Drift(community_id=self.community1.id, stored=None, actual=3)])
        self.assertTrue(drifts[0].missing)
        self.assertEqual(drifts[0].delta, 3)

    def test_recount_command_dry_run_reports_missing_row(self):
        CommunityAggregates.objects.filter(community=self.community2).delete()
        out = StringIO()

        call_command('recount_subscribers', '--dry-run', stdout=out)

        self.assertIn(f'community {self.community2.id}: missing -> 1 (+1)', out.getvalue())
        self.assertIn('1 communities drifted (dry run)', out.getvalue())
        self.assertFalse(CommunityAggregates.objects.filter(community=self.community2).exists())

    def test_recount_command_limited_to_community(self):
        """--community only creates and recounts rows for the given ids."""
        CommunityAggregates.objects.filter(community=self.community1).delete()
        set_subscribers(self.community2.id, 5)

        call_command('recount_subscribers', '--community', str(self.community2.id), stdout=StringIO())

        self.assertEqual(get_subscriber_count(self.community2.id), 1)
        self.assertFalse(CommunityAggregates.objects.filter(community=self.community1).exists())

        call_command('recount_subscribers', stdout=StringIO())

        self.assertEqual(get_subscriber_count(self.community1.id), 3)

    def test_recount_returns_value_written_under_lock(self):
        """A stale scan result is replaced by the count taken under the lock."""
        set_subscribers(self.community1.id, 7)
        stale = Drift(community_id=self.community1.id, stored=7, actual=99)

        with patch('communities.reconcile.find_drift', return_value=[stale]):
            fixed = recount_subscribers()

        self.assertEqual(fixed, [Drift(community_id=self.community1.id, stored=7, actual=3)])
        self.assertEqual(get_subscriber_count(self.community1.id), 3)

    def test_recount_skips_row_deleted_after_scan(self):
        stale = Drift(community_id=self.community2.id, stored=4, actual=1)
        CommunityAggregates.objects.filter(community=self.community2).delete()

        with patch('communities.reconcile.find_drift', return_value=[stale]):
            fixed = recount_subscribers()

        self.assertEqual(fixed, [])
        self.assertFalse(CommunityAggregates.objects.filter(community=self.community2).exists())

    def test_ensure_aggregates_limited_to_communities(self):
        CommunityAggregates.objects.filter(community__in=[self.community1, self.community2]).delete()

        self.assertEqual(ensure_aggregates([self.community2.id]), 1)
        self.assertFalse(CommunityAggregates.objects.filter(community=self.community1).exists())


class SeedDataTestCase(TestCase):

    def test_seed_data_counts_match_followers(self):
        call_command('seed_data', users=4, communities=2, follows=10, stdout=StringIO())

        self.assertEqual(Community.objects.count(), 2)
        self.assertEqual(find_drift(), [])
