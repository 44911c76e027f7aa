from django.apps import AppConfig


class ManualsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.manuals'
    verbose_name = 'Manuals and Ingestion Jobs'
