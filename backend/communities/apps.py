"""
Communities App Configuration
"""
from django.apps import AppConfig


class CommunitiesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'communities'

    def ready(self):
        # Connect the subscriber-count receivers
        import communities.signals  # noqa
