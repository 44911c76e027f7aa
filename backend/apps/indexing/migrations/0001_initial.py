# Generated migration for Chunk, ChunkQueueItem and Figure models

from django.db import migrations, models
import pgvector.django
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        pgvector.django.VectorExtension(),
        migrations.CreateModel(
            name='Chunk',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('manual_id', models.CharField(db_index=True, max_length=255)),
                ('tenant_id', models.CharField(db_index=True, max_length=255)),
                ('content', models.TextField(help_text='The text content of this chunk')),
                ('content_hash', models.CharField(help_text='SHA-256 of the content, dedup key per manual', max_length=64)),
                ('embedding', pgvector.django.VectorField(blank=True, dimensions=1536, help_text='Vector embedding of the content', null=True)),
                ('page_start', models.PositiveIntegerField(blank=True, null=True)),
                ('page_end', models.PositiveIntegerField(blank=True, null=True)),
                ('menu_path', models.CharField(blank=True, max_length=500, null=True)),
                ('section_heading', models.CharField(blank=True, max_length=500, null=True)),
                ('quality_score', models.FloatField(default=0.8)),
                ('metadata', models.JSONField(blank=True, default=dict, help_text='Derived flags: has_tables, has_lists, has_code_numbers, section_type')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'chunks_text',
                'ordering': ['manual_id', 'page_start'],
                'indexes': [models.Index(fields=['tenant_id', 'manual_id'], name='chunks_tenant_manual_idx')],
                'constraints': [models.UniqueConstraint(fields=('manual_id', 'content_hash'), name='unique_manual_content_hash')],
            },
        ),
        migrations.CreateModel(
            name='ChunkQueueItem',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('chunk_id', models.UUIDField(default=uuid.uuid4, help_text='Id the chunk row gets when first stored')),
                ('manual_id', models.CharField(db_index=True, max_length=255)),
                ('tenant_id', models.CharField(max_length=255)),
                ('content', models.TextField()),
                ('chunk_index', models.PositiveIntegerField()),
                ('token_count', models.PositiveIntegerField(default=0)),
                ('content_hash', models.CharField(max_length=64)),
                ('page_start', models.PositiveIntegerField(blank=True, null=True)),
                ('page_end', models.PositiveIntegerField(blank=True, null=True)),
                ('menu_path', models.CharField(blank=True, max_length=500, null=True)),
                ('section_heading', models.CharField(blank=True, max_length=500, null=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Locked by a batch'), ('done', 'Done'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('retry_count', models.PositiveIntegerField(default=0)),
                ('error', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'db_table': 'manual_chunk_queue',
                'ordering': ['manual_id', 'chunk_index'],
                'indexes': [models.Index(fields=['manual_id', 'status', 'chunk_index'], name='queue_manual_status_idx')],
                'constraints': [models.UniqueConstraint(fields=('manual_id', 'content_hash'), name='unique_queue_manual_content_hash')],
            },
        ),
        migrations.CreateModel(
            name='Figure',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('manual_id', models.CharField(db_index=True, max_length=255)),
                ('tenant_id', models.CharField(max_length=255)),
                ('figure_id', models.CharField(blank=True, default='', help_text="Figure label from the parser (e.g. 'fig-12')", max_length=255)),
                ('page_number', models.PositiveIntegerField(blank=True, null=True)),
                ('storage_path', models.CharField(blank=True, default='', help_text='Path relative to FIGURE_ROOT', max_length=500)),
                ('image_url', models.URLField(blank=True, default='', max_length=1000)),
                ('caption_text', models.TextField(blank=True, null=True)),
                ('ocr_text', models.TextField(blank=True, null=True)),
                ('ocr_status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('success', 'Success'), ('failed', 'Failed')], db_index=True, default='pending', max_length=20)),
                ('ocr_confidence', models.CharField(blank=True, max_length=20, null=True)),
                ('ocr_error', models.TextField(blank=True, null=True)),
                ('figure_type', models.CharField(blank=True, max_length=100, null=True)),
                ('vision_metadata', models.JSONField(blank=True, default=dict)),
                ('quality_score', models.FloatField(blank=True, null=True)),
                ('embedding_text', models.TextField(blank=True, null=True)),
                ('embedding', pgvector.django.VectorField(blank=True, dimensions=1536, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'figures',
                'ordering': ['manual_id', 'page_number'],
                'indexes': [models.Index(fields=['manual_id', 'ocr_status'], name='figures_manual_status_idx')],
            },
        ),
    ]
