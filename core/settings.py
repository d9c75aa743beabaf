"""
Django settings for the stockcart project.
"""

import os
from pathlib import Path

import dj_database_url
import sentry_sdk
from celery.schedules import crontab
from django.core.exceptions import ImproperlyConfigured
from dotenv import load_dotenv
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.django import DjangoIntegration

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent


# Security and environment
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
DJANGO_SECRET_KEY = (os.getenv("DJANGO_SECRET_KEY") or "").strip()
if not DJANGO_SECRET_KEY:
    if DEBUG:
        DJANGO_SECRET_KEY = "django-insecure-dev-only-change-me"
    else:
        raise ImproperlyConfigured("DJANGO_SECRET_KEY must be set when DEBUG=False")
SECRET_KEY = DJANGO_SECRET_KEY

ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost").split(",")
    if host.strip()
]
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
    if origin.strip()
]
CORS_ALLOW_ALL_ORIGINS = DEBUG


INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "corsheaders",
    "locks",
    "products",
    "users",
    "cart",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "core.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "core.wsgi.application"


# Database
DB_CONN_MAX_AGE = int(os.getenv("DB_CONN_MAX_AGE", "60"))
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
DB_SSLMODE = os.getenv("DB_SSLMODE", "require")

database_url = os.getenv("DATABASE_URL", "").strip()
if database_url:
    default_db = dj_database_url.parse(
        database_url,
        conn_max_age=DB_CONN_MAX_AGE,
        ssl_require=DB_SSLMODE in {"require", "verify-ca", "verify-full"},
    )
else:
    default_db = {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
        "CONN_MAX_AGE": DB_CONN_MAX_AGE,
    }

if default_db.get("ENGINE") == "django.db.backends.postgresql":
    db_options = default_db.setdefault("OPTIONS", {})
    db_options.setdefault("sslmode", DB_SSLMODE)
    db_options.setdefault("connect_timeout", DB_CONNECT_TIMEOUT)
    default_db["CONN_HEALTH_CHECKS"] = True

DATABASES = {"default": default_db}


# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True


STATIC_URL = os.getenv("STATIC_URL", "/static/")
STATIC_ROOT = BASE_DIR / "staticfiles"


# Caching
CACHE_TIMEOUT = int(os.getenv("CACHE_TIMEOUT", "120"))
REDIS_URL = (os.getenv("REDIS_URL") or "").strip()

if REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django_redis.cache.RedisCache",
            "LOCATION": REDIS_URL,
            "OPTIONS": {
                "CLIENT_CLASS": "django_redis.client.DefaultClient",
                # The cache layer handles its own failures; leases must see them.
                "IGNORE_EXCEPTIONS": False,
            },
            "TIMEOUT": CACHE_TIMEOUT,
            "KEY_PREFIX": "stockcart",
        }
    }
elif DEBUG:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "stockcart-cache-local",
            "TIMEOUT": CACHE_TIMEOUT,
        }
    }
else:
    raise ImproperlyConfigured("REDIS_URL must be set when DEBUG=False")

CART_CACHE_TTL = int(os.getenv("CART_CACHE_TTL", "60"))
PRODUCT_CACHE_TTL = int(os.getenv("PRODUCT_CACHE_TTL", "300"))
USER_CACHE_TTL = int(os.getenv("USER_CACHE_TTL", "1800"))


# Leases / stock coordination
# "redis" needs the default cache to be django-redis; "database" works anywhere.
LOCK_BACKEND = os.getenv("LOCK_BACKEND", "redis" if REDIS_URL else "database").strip().lower()
LOCK_CACHE_ALIAS = os.getenv("LOCK_CACHE_ALIAS", "default")
LOCK_DEFAULT_TTL_MS = int(os.getenv("LOCK_DEFAULT_TTL_MS", "30000"))
CART_LOCK_TTL_MS = int(os.getenv("CART_LOCK_TTL_MS", str(LOCK_DEFAULT_TTL_MS)))
CHECKOUT_LOCK_TTL_MS = int(os.getenv("CHECKOUT_LOCK_TTL_MS", str(LOCK_DEFAULT_TTL_MS)))
PRODUCT_LOCK_TTL_MS = int(os.getenv("PRODUCT_LOCK_TTL_MS", "10000"))
CART_STOCK_UPDATE_STRATEGY = os.getenv("CART_STOCK_UPDATE_STRATEGY", "auto").strip().lower()
LEASE_PURGE_INTERVAL_MINUTES = int(os.getenv("LEASE_PURGE_INTERVAL_MINUTES", "10"))

if LOCK_BACKEND not in {"redis", "database"}:
    raise ImproperlyConfigured("LOCK_BACKEND must be 'redis' or 'database'")
if LOCK_BACKEND == "redis" and not REDIS_URL:
    raise ImproperlyConfigured("LOCK_BACKEND=redis requires REDIS_URL")
if CART_STOCK_UPDATE_STRATEGY not in {"auto", "transaction", "lock_ordering"}:
    raise ImproperlyConfigured(
        "CART_STOCK_UPDATE_STRATEGY must be 'auto', 'transaction' or 'lock_ordering'"
    )


# DRF
REST_FRAMEWORK = {
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 10,
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.ScopedRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "cart_add": os.getenv("THROTTLE_CART_ADD", "60/minute"),
        "checkout_place": os.getenv("THROTTLE_CHECKOUT_PLACE", "12/minute"),
        "order_history": os.getenv("THROTTLE_ORDER_HISTORY", "30/minute"),
    },
}


# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL or "redis://127.0.0.1:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_REJECT_ON_WORKER_LOST = True
CELERY_BROKER_CONNECTION_RETRY_ON_STARTUP = True
CELERY_WORKER_PREFETCH_MULTIPLIER = int(os.getenv("CELERY_WORKER_PREFETCH_MULTIPLIER", "1"))
CELERY_TASK_SOFT_TIME_LIMIT = int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "90"))
CELERY_TASK_TIME_LIMIT = int(os.getenv("CELERY_TASK_TIME_LIMIT", "120"))
CELERY_TASK_ALWAYS_EAGER = os.getenv("CELERY_TASK_ALWAYS_EAGER", "false").lower() == "true"
CELERY_BEAT_SCHEDULE = {
    "purge-expired-leases": {
        "task": "locks.tasks.purge_expired_leases",
        "schedule": crontab(minute=f"*/{LEASE_PURGE_INTERVAL_MINUTES}"),
    },
}


SYSTEM_STATUS_TOKEN = os.getenv("SYSTEM_STATUS_TOKEN", "")

# Sentry
SENTRY_DSN = (os.getenv("SENTRY_DSN") or "").strip()
SENTRY_ENVIRONMENT = (
    (os.getenv("SENTRY_ENVIRONMENT") or "").strip()
    or ("development" if DEBUG else "production")
)
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0"))

if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[DjangoIntegration(), CeleryIntegration()],
        environment=SENTRY_ENVIRONMENT,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
    )


# Proxy + security hardening
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
SECURE_SSL_REDIRECT = os.getenv("SECURE_SSL_REDIRECT", "true").lower() == "true"
SECURE_HSTS_SECONDS = int(os.getenv("SECURE_HSTS_SECONDS", "31536000"))
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "true").lower() == "true"
CSRF_COOKIE_SECURE = os.getenv("CSRF_COOKIE_SECURE", "true").lower() == "true"
SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = "DENY"


# Logging
LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "logs")))
os.makedirs(LOG_DIR, exist_ok=True)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": "INFO",
        },
        "app_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": str(LOG_DIR / "app.log"),
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "standard",
            "level": "INFO",
        },
        "error_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": str(LOG_DIR / "error.log"),
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "standard",
            "level": "ERROR",
        },
    },
    "loggers": {
        "django": {
            "handlers": ["console", "app_file"],
            "level": "INFO",
            "propagate": True,
        },
        "django.request": {
            "handlers": ["console", "error_file"],
            "level": "ERROR",
            "propagate": False,
        },
        "locks": {
            "handlers": ["console", "app_file", "error_file"],
            "level": os.getenv("LOCKS_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "cart": {
            "handlers": ["console", "app_file", "error_file"],
            "level": os.getenv("CART_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["console", "app_file"],
        "level": "INFO",
    },
}


DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
