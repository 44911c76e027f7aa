"""
Django management command to run the ingestion worker.

Usage:
    python manage.py run_worker
    python manage.py run_worker --once --manual <manual_id>
"""
from django.core.management.base import BaseCommand

from apps.indexing.worker import IngestionWorker


class Command(BaseCommand):
    help = 'Run the manual ingestion worker'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Process one job and exit (for testing)',
        )
        parser.add_argument(
            '--manual',
            default=None,
            help='Only claim jobs for this manual id',
        )

    def handle(self, *args, **options):
        worker = IngestionWorker(manual_id=options['manual'])

        if options['once']:
            self.stdout.write('Running worker once...')
            if worker.run_once():
                self.stdout.write(self.style.SUCCESS('Processed one job'))
            else:
                self.stdout.write('No jobs available')
        else:
            self.stdout.write('Starting worker loop...')
            worker.run()
