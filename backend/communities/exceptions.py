"""
Exceptions for subscriber-count maintenance.

These are raised from inside the follower signal handlers and the follow
service. They are never caught locally: raising one aborts the enclosing
atomic block, so the follow/unfollow that fired the hook is rolled back
together with the failed counter update.
"""


class SubscriberCountError(Exception):
    """Base class for counter maintenance failures."""


class AggregatesMissing(SubscriberCountError):
    """
    The community has no aggregate row to update.

    Every Community gets its aggregate row on creation, so this means the
    row was removed by hand or the data was loaded without it.
    """

    def __init__(self, community_id: int):
        self.community_id = community_id
        super().__init__(f"No community_aggregates row for community {community_id}")
