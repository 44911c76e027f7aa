"""
URL configuration for the ManualAssist backend.
"""
from django.urls import path, include

from apps.ops.health import healthz, readyz


urlpatterns = [
    # Health check endpoints (no auth)
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('api/manuals/', include('apps.manuals.urls')),
    path('api/rag/', include('apps.rag.urls')),
    path('api/quality/', include('apps.quality.urls')),
    path('api/sms/', include('apps.sms.urls')),
]
