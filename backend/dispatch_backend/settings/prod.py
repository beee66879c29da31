from .base import *  # noqa: F401,F403
import os

DEBUG = False
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(',')

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels_redis.core.RedisChannelLayer",
        "CONFIG": {
            "hosts": [os.getenv("REDIS_URL", "redis://localhost:6379/0")],
        },
    }
}

# Real drivers need more than the simulated few seconds to respond.
TRIP_ACCEPT_TIMEOUT_SECONDS = int(os.getenv("TRIP_ACCEPT_TIMEOUT_SECONDS", 30))
