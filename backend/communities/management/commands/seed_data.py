"""
Management command to seed the database with sample data.

Usage: python manage.py seed_data
"""

import random
from django.core.management.base import BaseCommand
from django.contrib.auth.models import User

from communities.models import Community
from communities.services import follow_community


class Command(BaseCommand):
    help = 'Seed the database with sample communities and followers'

    def add_arguments(self, parser):
        parser.add_argument(
            '--users',
            type=int,
            default=10,
            help='Number of users to create'
        )
        parser.add_argument(
            '--communities',
            type=int,
            default=5,
            help='Number of communities to create'
        )
        parser.add_argument(
            '--follows',
            type=int,
            default=30,
            help='Number of follow attempts (duplicates are skipped)'
        )
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding'
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing data...')
            # Deleting communities cascades to followers and aggregates
            Community.objects.all().delete()
            User.objects.filter(is_superuser=False).delete()

        self.stdout.write('Creating users...')
        users = self._create_users(options['users'])

        self.stdout.write('Creating communities...')
        communities = self._create_communities(options['communities'])

        self.stdout.write('Creating follows...')
        created = self._create_follows(users, communities, options['follows'])

        self.stdout.write(self.style.SUCCESS(
            f'Successfully created:\n'
            f'  - {len(users)} users\n'
            f'  - {len(communities)} communities\n'
            f'  - {created} follows'
        ))
        for community in communities:
            community.aggregates.refresh_from_db()
            self.stdout.write(
                f'  {community.name}: {community.aggregates.subscribers} subscribers'
            )

    def _create_users(self, count):
        users = []
        for i in range(count):
            user, _ = User.objects.get_or_create(
                username=f'user{i+1}',
                defaults={'email': f'user{i+1}@example.com'}
            )
            users.append(user)
        return users

    def _create_communities(self, count):
        topics = ['python', 'django', 'selfhosted', 'gardening', 'chess',
                  'cycling', 'photography', 'linux', 'cooking', 'books']
        communities = []
        for i in range(count):
            name = f'{topics[i % len(topics)]}{i+1}'
            community, _ = Community.objects.get_or_create(
                name=name,
                defaults={'title': name.capitalize()}
            )
            communities.append(community)
        return communities

    def _create_follows(self, users, communities, count):
        if not users or not communities:
            return 0
        created = 0
        for _ in range(count):
            result = follow_community(
                random.choice(users),
                random.choice(communities).id,
                pending=random.random() < 0.1
            )
            if result.success:
                created += 1
        return created
