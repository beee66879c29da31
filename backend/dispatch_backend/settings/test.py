from .base import *  # noqa: F401,F403

DEBUG = False

# File-backed so TransactionTestCase threads share one database. SQLite ignores
# select_for_update; IMMEDIATE takes the write lock when each atomic block opens.
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': str(BASE_DIR / 'test_dispatch.sqlite3'),
        'OPTIONS': {
            'transaction_mode': 'IMMEDIATE',
            'timeout': 20,
        },
        'TEST': {
            'NAME': str(BASE_DIR / 'test_dispatch.sqlite3'),
        },
    }
}

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"
CELERY_TASK_ALWAYS_EAGER = False

ROUTING_ORACLE = {
    "BACKEND": "straight_line",
    "BASE_URL": "http://osrm.test",
    "TIMEOUT_SECONDS": 1.0,
    "MAX_RETRIES": 0,
    "BACKOFF_FACTOR": 0,
}

TRIP_AUTO_DISPATCH = False
ENABLE_OFFER_EXPIRY_TASKS = False
ENABLE_PRESENCE_REDISPATCH = False

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'handlers': {'null': {'class': 'logging.NullHandler'}},
    'root': {'handlers': ['null'], 'level': 'CRITICAL'},
}
