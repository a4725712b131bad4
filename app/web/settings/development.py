from .base import *  # noqa: F401,F403

DEBUG = True

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")

ALLOWED_HOSTS = ["*"]
