# Generated migration for QueryLog model

from django.db import migrations, models
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='QueryLog',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('tenant_id', models.CharField(db_index=True, max_length=255)),
                ('user_id', models.CharField(blank=True, max_length=255, null=True)),
                ('manual_id', models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ('channel', models.CharField(default='web', max_length=20)),
                ('query_text', models.TextField()),
                ('normalized_query', models.TextField(blank=True, default='')),
                ('response_text', models.TextField(blank=True, default='')),
                ('quality_score', models.FloatField(blank=True, null=True)),
                ('quality_tier', models.CharField(choices=[('high', 'High'), ('medium', 'Medium'), ('low', 'Low')], default='low', max_length=10)),
                ('claim_coverage', models.FloatField(blank=True, null=True)),
                ('numeric_flags', models.JSONField(blank=True, default=list)),
                ('top_score', models.FloatField(blank=True, null=True)),
                ('retrieval_method', models.CharField(blank=True, default='', max_length=50)),
                ('model_name', models.CharField(blank=True, default='', max_length=100)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'query_logs',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['tenant_id', 'created_at'], name='query_logs_tenant_created_idx'),
                    models.Index(fields=['quality_tier'], name='query_logs_tier_idx'),
                ],
            },
        ),
    ]
