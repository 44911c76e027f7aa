"""
URL configuration for the quality app.
"""
from django.urls import path
from . import views

app_name = 'quality'

urlpatterns = [
    path('check', views.quality_check, name='check'),
]
