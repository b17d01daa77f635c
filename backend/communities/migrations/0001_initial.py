from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Community',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255, unique=True)),
                ('title', models.CharField(max_length=255)),
                ('local', models.BooleanField(default=True)),
                ('published', models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                'db_table': 'community',
            },
        ),
        migrations.CreateModel(
            name='CommunityAggregates',
            fields=[
                ('community', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, primary_key=True, related_name='aggregates', serialize=False, to='communities.community')),
                ('subscribers', models.IntegerField(default=0)),
            ],
            options={
                'verbose_name_plural': 'community aggregates',
                'db_table': 'community_aggregates',
            },
        ),
        migrations.CreateModel(
            name='CommunityFollower',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('pending', models.BooleanField(default=False)),
                ('published', models.DateTimeField(default=django.utils.timezone.now)),
                ('community', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='followers', to='communities.community')),
                ('person', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='community_follows', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'community_follower',
            },
        ),
        migrations.AddConstraint(
            model_name='communityfollower',
            constraint=models.UniqueConstraint(fields=('community', 'person'), name='unique_follower_per_community'),
        ),
    ]
