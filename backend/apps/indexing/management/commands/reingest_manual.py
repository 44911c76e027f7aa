"""
Django management command to re-chunk and re-embed one manual.

Usage:
    python manage.py reingest_manual <manual_id> --tenant <tenant_id>
"""
from django.core.management.base import BaseCommand, CommandError

from apps.indexing.reingest import ReingestError, reingest_manual
from apps.manuals.validation import ValidationError


class Command(BaseCommand):
    help = 'Rebuild the chunks and figure embeddings of a manual'

    def add_arguments(self, parser):
        parser.add_argument('manual_id')
        parser.add_argument('--tenant', required=True, help='Owning tenant id')
        parser.add_argument(
            '--skip-figures',
            action='store_true',
            help='Only rebuild text chunks',
        )

    def handle(self, *args, **options):
        try:
            result = reingest_manual(
                options['manual_id'],
                options['tenant'],
                include_figures=not options['skip_figures'],
            )
        except (ValidationError, ReingestError) as e:
            raise CommandError(str(e))

        self.stdout.write(self.style.SUCCESS(
            f"Re-ingested {result.manual_id}: {result.old_chunks} -> {result.chunks_created} chunks, "
            f"{result.chunks_dropped} dropped, {result.figures_embedded} figures embedded"
        ))
