"""
Django settings for the billing synchronization backend.

Values are read from the process environment, optionally seeded from a
``.env`` file next to the project root.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default=None):
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return int(value)


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-billing-sync-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [host.strip() for host in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if host.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "django_filters",
    "organizations",
    "billing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "billing.middleware.request_id.RequestIdMiddleware",
]

ROOT_URLCONF = "backend.urls"

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

ASGI_APPLICATION = "backend.asgi.application"

if os.getenv("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB"),
            "USER": os.getenv("POSTGRES_USER", "postgres"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
            "CONN_MAX_AGE": _env_int("POSTGRES_CONN_MAX_AGE", 60),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
        "rest_framework.filters.OrderingFilter",
    ],
}

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION") or None
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")

# Billing engine
BILLING_LOCK_TIMEOUT_MS = _env_int("BILLING_LOCK_TIMEOUT_MS", 5000)
BILLING_REACTIVATION_WINDOW_DAYS = _env_int("BILLING_REACTIVATION_WINDOW_DAYS", 30)
# Days after trial_end before an unpaid trial lapses to expired.
BILLING_TRIAL_GRACE_DAYS = _env_int("BILLING_TRIAL_GRACE_DAYS", 3)
# None keeps scheduled changes purely lazy (applied on next touch only).
BILLING_RECONCILE_SWEEP_MINUTES = _env_int("BILLING_RECONCILE_SWEEP_MINUTES", None)
BILLING_PORTAL_RETURN_URL = os.getenv("BILLING_PORTAL_RETURN_URL", "")

BILLING_PLAN_CATALOG = {
    "free": {
        "name": "Free",
        "tier": "free",
        "plan_type": "both",
        "amount": "0",
        "min_seats": 1,
        "max_seats": 1,
        "features": ["core"],
        "member_limit": 1,
        "project_limit": 3,
        "sort_order": 0,
    },
    "basic": {
        "name": "Basic",
        "tier": "basic",
        "plan_type": "both",
        "amount": "9",
        "is_per_seat": True,
        "seat_price": "9",
        "max_seats": 10,
        "trial_period_days": 14,
        "features": ["core", "exports"],
        "member_limit": 10,
        "project_limit": 20,
        "stripe_price_id": os.getenv("STRIPE_PRICE_BASIC", ""),
        "sort_order": 10,
    },
    "pro": {
        "name": "Pro",
        "tier": "pro",
        "plan_type": "both",
        "amount": "29",
        "is_per_seat": True,
        "seat_price": "29",
        "max_seats": 50,
        "trial_period_days": 14,
        "features": ["core", "exports", "analytics", "priority_support"],
        "member_limit": 50,
        "project_limit": 100,
        "stripe_price_id": os.getenv("STRIPE_PRICE_PRO", ""),
        "sort_order": 20,
    },
    "business": {
        "name": "Business",
        "tier": "business",
        "plan_type": "organization",
        "amount": "99",
        "is_per_seat": True,
        "seat_price": "19",
        "min_seats": 5,
        "max_seats": 250,
        "features": ["core", "exports", "analytics", "priority_support", "sso"],
        "member_limit": 250,
        "stripe_price_id": os.getenv("STRIPE_PRICE_BUSINESS", ""),
        "sort_order": 30,
    },
    "enterprise": {
        "name": "Enterprise",
        "tier": "enterprise",
        "plan_type": "organization",
        "amount": "0",
        "is_per_seat": True,
        "min_seats": 10,
        "features": ["core", "exports", "analytics", "priority_support", "sso", "audit_export"],
        "is_public": False,
        "stripe_price_id": os.getenv("STRIPE_PRICE_ENTERPRISE", ""),
        "sort_order": 40,
    },
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.getenv("DJANGO_LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "billing": {
            "handlers": ["console"],
            "level": os.getenv("BILLING_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
