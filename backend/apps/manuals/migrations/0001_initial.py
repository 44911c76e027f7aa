# Generated migration for Document, IngestionJob and ProcessingStatus models

from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Document',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('manual_id', models.CharField(help_text='Stable external key of the manual', max_length=255, unique=True)),
                ('tenant_id', models.CharField(db_index=True, help_text='Owning tenant', max_length=255)),
                ('source_filename', models.CharField(blank=True, default='', help_text='Original uploaded filename', max_length=255)),
                ('parse_job_id', models.CharField(blank=True, help_text='Job identifier in the external parsing service', max_length=255, null=True)),
                ('page_count', models.PositiveIntegerField(blank=True, help_text='Number of pages (recomputed by re-ingestion)', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'documents',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['tenant_id', 'created_at'], name='documents_tenant_created_idx')],
            },
        ),
        migrations.CreateModel(
            name='IngestionJob',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('kind', models.CharField(choices=[('ingest', 'Chunk queue ingestion'), ('reingest', 'Re-ingestion / backfill'), ('figures', 'Figure enrichment')], default='ingest', max_length=20)),
                ('status', models.CharField(choices=[('queued', 'Queued'), ('running', 'Running'), ('completed', 'Completed'), ('partial', 'Finished with failed items'), ('failed', 'Failed')], db_index=True, default='queued', help_text='Current job status', max_length=20)),
                ('batches_run', models.PositiveIntegerField(default=0)),
                ('items_succeeded', models.PositiveIntegerField(default=0)),
                ('items_failed', models.PositiveIntegerField(default=0)),
                ('error_message', models.TextField(blank=True, help_text='Error message if job failed', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('document', models.ForeignKey(help_text='The manual being processed', on_delete=django.db.models.deletion.CASCADE, related_name='ingestion_jobs', to='manuals.document')),
            ],
            options={
                'db_table': 'ingestion_jobs',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'created_at'], name='ingestion_status_created_idx'),
                    models.Index(fields=['document', 'kind'], name='ingestion_document_kind_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ProcessingStatus',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('manual_id', models.CharField(max_length=255, unique=True)),
                ('chunks_processed', models.PositiveIntegerField(default=0)),
                ('total_chunks', models.PositiveIntegerField(default=0)),
                ('figures_processed', models.PositiveIntegerField(default=0)),
                ('total_figures', models.PositiveIntegerField(default=0)),
                ('progress_percent', models.PositiveSmallIntegerField(default=0, help_text='Progress percentage (0-100)')),
                ('current_task', models.CharField(blank=True, default='', max_length=255)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('partial', 'Completed with errors'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('document', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='processing_status', to='manuals.document')),
            ],
            options={
                'db_table': 'processing_status',
            },
        ),
    ]
