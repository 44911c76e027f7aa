"""
Django settings for the ManualAssist backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv('DEBUG', 'False').lower() in ('true', '1', 'yes')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
]

# Application definition
INSTALLED_APPS = [
    'daphne',  # ASGI server for Channels
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'django.contrib.postgres',
    'channels',
    'apps.manuals',
    'apps.indexing',
    'apps.rag',
    'apps.quality',
    'apps.sms',
    'apps.ops',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# Database
# Using environment variable for database URL
DATABASE_URL = os.getenv('DATABASE_URL', '')
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}
if DATABASE_URL:
    import re
    match = re.match(
        r'postgres(?:ql)?://(?P<user>[^:]+):(?P<password>[^@]+)@(?P<host>[^:]+):(?P<port>\d+)/(?P<name>.+)',
        DATABASE_URL
    )
    if match:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.postgresql',
                'NAME': match.group('name'),
                'USER': match.group('user'),
                'PASSWORD': match.group('password'),
                'HOST': match.group('host'),
                'PORT': match.group('port'),
            }
        }

# Password validation (minimal for API-only backend)
AUTH_PASSWORD_VALIDATORS = []

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Redis
# =============================================================================
REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')

# =============================================================================
# Django Channels (WebSocket progress stream)
# =============================================================================
CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels_redis.core.RedisChannelLayer',
        'CONFIG': {
            'hosts': [REDIS_URL],
        },
    },
}

# =============================================================================
# Embedding oracle
# =============================================================================
# "openai" (any OpenAI-compatible /embeddings API) or "ollama"
EMBEDDING_PROVIDER = os.getenv('EMBEDDING_PROVIDER', 'openai').lower()
EMBEDDING_MODEL = os.getenv('EMBEDDING_MODEL', 'text-embedding-3-small')

# Must match the VectorField dimension of chunks and figures
EMBEDDING_DIMENSIONS = int(os.getenv('EMBEDDING_DIMENSIONS', '1536'))

# Character ceiling applied by callers before embedding
EMBEDDING_MAX_CHARS = int(os.getenv('EMBEDDING_MAX_CHARS', '8000'))
EMBEDDING_TIMEOUT = int(os.getenv('EMBEDDING_TIMEOUT', '60'))

# =============================================================================
# Generation / vision oracles
# =============================================================================
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'openai').lower()

OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
OPENAI_BASE_URL = os.getenv('OPENAI_BASE_URL', 'https://api.openai.com/v1')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
OPENAI_TIMEOUT = int(os.getenv('OPENAI_TIMEOUT', '120'))

OLLAMA_BASE_URL = os.getenv('OLLAMA_BASE_URL', 'http://ollama:11434')
OLLAMA_CHAT_MODEL = os.getenv('OLLAMA_CHAT_MODEL', 'llama3.2')
OLLAMA_CHAT_TIMEOUT = int(os.getenv('OLLAMA_CHAT_TIMEOUT', '600'))

GEMINI_API_KEY = os.getenv('GEMINI_API_KEY', '')
GEMINI_MODEL = os.getenv('GEMINI_MODEL', 'gemini-1.5-flash')
GEMINI_TIMEOUT = int(os.getenv('GEMINI_TIMEOUT', '120'))

# Vision extraction always goes through the OpenAI-compatible API
VISION_MODEL = os.getenv('VISION_MODEL', 'gpt-4o-mini')
VISION_TIMEOUT = int(os.getenv('VISION_TIMEOUT', '90'))

# =============================================================================
# Ingestion (chunk queue + batch worker)
# =============================================================================
CHUNK_BATCH_SIZE = int(os.getenv('CHUNK_BATCH_SIZE', '30'))
CHUNK_MAX_CONCURRENCY = int(os.getenv('CHUNK_MAX_CONCURRENCY', '5'))

# Explicit re-drives allowed per queue item before it stays failed
CHUNK_MAX_RETRIES = int(os.getenv('CHUNK_MAX_RETRIES', '3'))

# Seconds before a processing claim counts as abandoned and is handed out again
CHUNK_CLAIM_TIMEOUT_SECONDS = int(os.getenv('CHUNK_CLAIM_TIMEOUT_SECONDS', '300'))

INGEST_CHUNK_SIZE = int(os.getenv('INGEST_CHUNK_SIZE', '500'))
INGEST_CHUNK_OVERLAP = int(os.getenv('INGEST_CHUNK_OVERLAP', '135'))
INGEST_MIN_CHUNK_SIZE = int(os.getenv('INGEST_MIN_CHUNK_SIZE', '200'))

# Root directory for extracted figure images (relative storage paths)
FIGURE_ROOT = Path(os.getenv('FIGURE_ROOT', '/data/figures'))

# =============================================================================
# Re-ingestion / backfill
# =============================================================================
REINGEST_CHUNK_SIZE = int(os.getenv('REINGEST_CHUNK_SIZE', '400'))
REINGEST_CHUNK_OVERLAP = int(os.getenv('REINGEST_CHUNK_OVERLAP', '125'))
REINGEST_INSERT_BATCH = int(os.getenv('REINGEST_INSERT_BATCH', '100'))
REINGEST_DEFAULT_PAGE_COUNT = int(os.getenv('REINGEST_DEFAULT_PAGE_COUNT', '48'))

# =============================================================================
# Oracle throttling
# =============================================================================
REINGEST_EMBED_PAUSE_SECONDS = float(os.getenv('REINGEST_EMBED_PAUSE_SECONDS', '0.1'))
FIGURE_PAUSE_EVERY = int(os.getenv('FIGURE_PAUSE_EVERY', '10'))
FIGURE_PAUSE_SECONDS = float(os.getenv('FIGURE_PAUSE_SECONDS', '1.0'))
FIGURE_CHECKPOINT_EVERY = int(os.getenv('FIGURE_CHECKPOINT_EVERY', '5'))

# =============================================================================
# Hybrid search
# =============================================================================
SEARCH_VECTOR_THRESHOLD = float(os.getenv('SEARCH_VECTOR_THRESHOLD', '0.30'))
SEARCH_TEXT_THRESHOLD = float(os.getenv('SEARCH_TEXT_THRESHOLD', '0.05'))
SEARCH_CANDIDATE_K = int(os.getenv('SEARCH_CANDIDATE_K', '60'))
SEARCH_TOP_K = int(os.getenv('SEARCH_TOP_K', '10'))
SEARCH_RERANK_MIN_CANDIDATES = int(os.getenv('SEARCH_RERANK_MIN_CANDIDATES', '3'))
SEARCH_ENABLE_MMR = os.getenv('SEARCH_ENABLE_MMR', 'False').lower() in ('true', '1', 'yes')
SEARCH_MMR_LAMBDA = float(os.getenv('SEARCH_MMR_LAMBDA', '0.7'))

# =============================================================================
# Cross-Encoder Reranker (optional)
# =============================================================================
# Set to False to disable reranking server-wide
ENABLE_RERANKER = os.getenv('ENABLE_RERANKER', 'True').lower() in ('true', '1', 'yes')

# =============================================================================
# Answer style heuristics
# =============================================================================
ANSWER_MIN_TOP_SCORE = float(os.getenv('ANSWER_MIN_TOP_SCORE', '0.62'))
ANSWER_WEAK_BUNDLE_AVG = float(os.getenv('ANSWER_WEAK_BUNDLE_AVG', '0.58'))
ANSWER_MIN_STRONG_HITS = int(os.getenv('ANSWER_MIN_STRONG_HITS', '2'))

# Excerpts handed to the generation oracle, and its sampling settings
ANSWER_CONTEXT_CHUNKS = int(os.getenv('ANSWER_CONTEXT_CHUNKS', '6'))
ANSWER_TEMPERATURE = float(os.getenv('ANSWER_TEMPERATURE', '0.2'))
ANSWER_MAX_TOKENS = int(os.getenv('ANSWER_MAX_TOKENS', '600'))

# Write query logs from a background thread (off the request path)
QUERY_LOG_ASYNC = os.getenv('QUERY_LOG_ASYNC', 'True').lower() in ('true', '1', 'yes')

# =============================================================================
# SMS
# =============================================================================
# Hard limit of the SMS transport
SMS_MAX_LENGTH = int(os.getenv('SMS_MAX_LENGTH', '280'))

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
        'json': {
            'format': '%(message)s',  # Audit logs are already JSON
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'audit': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps.indexing': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps.rag': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'apps.quality': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps.sms': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'audit': {
            'handlers': ['audit'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
