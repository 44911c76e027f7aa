"""
URL configuration for the SMS app.
"""
from django.urls import path
from . import views

app_name = 'sms'

urlpatterns = [
    path('<str:tenant_id>/webhook', views.sms_webhook, name='webhook'),
]
