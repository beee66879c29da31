"""
Base settings for the ride dispatch backend.

Environment specific modules (prod.py, test.py) import everything from here
and override what they need.
"""

import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(os.path.join(BASE_DIR, '..', '.env'))

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-dispatch-dev-key-change-me")
DEBUG = os.getenv("DJANGO_DEBUG", "true").lower() == "true"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(',')

INSTALLED_APPS = [
    'daphne',
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'channels',
    'drivers',
    'trips',
    'realtime',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
]

ROOT_URLCONF = 'dispatch_backend.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

ASGI_APPLICATION = 'dispatch_backend.asgi.application'

DATABASES = {
    'default': {
        'ENGINE': os.getenv("DB_ENGINE", 'django.db.backends.sqlite3'),
        'NAME': os.getenv("DB_NAME", str(BASE_DIR / 'db.sqlite3')),
        'USER': os.getenv("DB_USER", ""),
        'PASSWORD': os.getenv("DB_PASSWORD", ""),
        'HOST': os.getenv("DB_HOST", ""),
        'PORT': os.getenv("DB_PORT", ""),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# ---------------------- REST framework / identity ----------------------
# Tokens are issued by the identity provider; we only verify them and read
# the asserted user id and role claims.

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': (
        'rest_framework_simplejwt.authentication.JWTStatelessUserAuthentication',
    ),
    'DEFAULT_PERMISSION_CLASSES': (
        'rest_framework.permissions.IsAuthenticated',
    ),
}

SIMPLE_JWT = {
    'ACCESS_TOKEN_LIFETIME': timedelta(minutes=int(os.getenv("JWT_ACCESS_MINUTES", 60))),
    'SIGNING_KEY': os.getenv("JWT_SIGNING_KEY", SECRET_KEY),
    'USER_ID_CLAIM': 'user_id',
    'AUTH_HEADER_TYPES': ('Bearer',),
}

# ---------------------- Channels / Celery / Redis ----------------------

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    'expire-stale-driver-sessions': {
        'task': 'drivers.tasks.expire_stale_driver_sessions_task',
        'schedule': 30.0,
    },
    'sweep-expired-trip-offers': {
        'task': 'trips.tasks.sweep_expired_offers_task',
        'schedule': 10.0,
    },
    'redispatch-waiting-trips': {
        'task': 'trips.tasks.redispatch_waiting_trips_task',
        'schedule': 15.0,
    },
}

# ---------------------- Dispatch configuration ----------------------

# How long a proposed driver has to accept before the trip moves on.
TRIP_ACCEPT_TIMEOUT_SECONDS = int(os.getenv("TRIP_ACCEPT_TIMEOUT_SECONDS", 3))

# Drivers that have not reported a position for this long are taken offline.
DRIVER_SESSION_TTL_SECONDS = int(os.getenv("DRIVER_SESSION_TTL_SECONDS", 120))

MAX_DROPOFFS = 5

FARE_DEFAULTS = {
    "BASE_FARE": 300,
    "PER_KM_RATE": 150,
}

ROUTING_ORACLE = {
    "BACKEND": os.getenv("ROUTING_BACKEND", "osrm"),   # "osrm" or "straight_line"
    "BASE_URL": os.getenv("OSRM_BASE_URL", "https://router.project-osrm.org"),
    "TIMEOUT_SECONDS": float(os.getenv("OSRM_TIMEOUT_SECONDS", 5)),
    "MAX_RETRIES": int(os.getenv("OSRM_MAX_RETRIES", 3)),
    "BACKOFF_FACTOR": float(os.getenv("OSRM_BACKOFF_FACTOR", 0.5)),
}

# Dispatch a trip to the nearest driver as soon as it is created.
TRIP_AUTO_DISPATCH = True

# Schedule Celery accept-timeout tasks when a driver is proposed.
ENABLE_OFFER_EXPIRY_TASKS = True

# Re-dispatch waiting trips whenever a driver comes online.
ENABLE_PRESENCE_REDISPATCH = True

# ---------------------- Logging ----------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'drivers': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'trips': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'services': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'realtime': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
}
