"""
URL configuration for the manuals app.
"""
from django.urls import path
from . import views

app_name = 'manuals'

urlpatterns = [
    path('ingest', views.ingest_manual, name='ingest'),
    path('<str:manual_id>/process', views.process_manual, name='process'),
    path('<str:manual_id>/retry-failed', views.retry_failed, name='retry-failed'),
    path('<str:manual_id>/reingest', views.reingest, name='reingest'),
    path('<str:manual_id>/figures/process', views.process_figures, name='figures-process'),
    path('<str:manual_id>/status', views.manual_status, name='status'),
]
