"""
Management command to repair drifted subscriber counters.

Usage: python manage.py recount_subscribers [--community ID ...] [--dry-run]
"""

from django.core.management.base import BaseCommand

from communities.reconcile import ensure_aggregates, recount_subscribers


class Command(BaseCommand):
    help = 'Recompute community_aggregates.subscribers from follower rows'

    def add_arguments(self, parser):
        parser.add_argument(
            '--community',
            type=int,
            action='append',
            dest='communities',
            help='Only check this community id (repeatable)'
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report drift without writing'
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        community_ids = options['communities']

        if not dry_run:
            created = ensure_aggregates(community_ids)
            if created:
                self.stdout.write(f'Created {created} missing aggregate rows')

        drifts = recount_subscribers(
            community_ids=community_ids,
            dry_run=dry_run
        )

        for drift in drifts:
            stored = 'missing' if drift.missing else drift.stored
            self.stdout.write(
                f'  community {drift.community_id}: '
                f'{stored} -> {drift.actual} ({drift.delta:+d})'
            )

        if not drifts:
            self.stdout.write(self.style.SUCCESS('All subscriber counts are correct'))
        elif dry_run:
            self.stdout.write(self.style.WARNING(f'{len(drifts)} communities drifted (dry run)'))
        else:
            self.stdout.write(self.style.SUCCESS(f'Fixed {len(drifts)} communities'))
