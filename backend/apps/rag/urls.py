"""
RAG URL routing.
"""
from django.urls import path

from apps.rag.views import AskView, SearchView

urlpatterns = [
    path('search', SearchView.as_view(), name='rag-search'),
    path('ask', AskView.as_view(), name='rag-ask'),
]
