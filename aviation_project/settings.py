from pathlib import Path
import os

BASE_DIR = Path(__file__).resolve().parent.parent

# ---------------------------------------------------------------------------
# Core Django settings
# ---------------------------------------------------------------------------

DEBUG = os.environ.get("DJANGO_DEBUG", "true").lower() == "true"

# SECRET_KEY must always come from the environment when DEBUG is False.
if DEBUG:
    SECRET_KEY = os.environ.get(
        "DJANGO_SECRET_KEY",
        "dev-secret-key-not-for-production",
    )
else:
    SECRET_KEY = os.environ["DJANGO_SECRET_KEY"]

# Example: DJANGO_ALLOWED_HOSTS="aviationsafetywatch.com,api.aviationsafetywatch.com"
ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get(
        "DJANGO_ALLOWED_HOSTS",
        "127.0.0.1,localhost,testserver",
    ).split(",")
    if host.strip()
]

# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "drf_spectacular",
    "corsheaders",
    "accidents",
    "ingestion",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "aviation_project.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "aviation_project.wsgi.application"

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

# PostgreSQL in deployed environments; a local SQLite file when no
# POSTGRES_HOST is configured (development and the test suite).
if os.environ.get("POSTGRES_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ.get("POSTGRES_DB", "aviation_safety_watch"),
            "USER": os.environ.get("POSTGRES_USER", "postgres"),
            "PASSWORD": os.environ.get("POSTGRES_PASSWORD", ""),
            "HOST": os.environ["POSTGRES_HOST"],
            "PORT": os.environ.get("POSTGRES_PORT", "5432"),
            "OPTIONS": {
                "sslmode": os.environ.get("POSTGRES_SSLMODE", "prefer"),
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

# ---------------------------------------------------------------------------
# Password validation
# ---------------------------------------------------------------------------

AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]

# ---------------------------------------------------------------------------
# Internationalization
# ---------------------------------------------------------------------------

LANGUAGE_CODE = "en-us"

TIME_ZONE = "UTC"

USE_I18N = True

USE_TZ = True

# ---------------------------------------------------------------------------
# Static files
# ---------------------------------------------------------------------------

STATIC_URL = "/static/"
STATIC_ROOT = os.path.join(BASE_DIR, "staticfiles")

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("DJANGO_LOG_LEVEL", "INFO"),
    },
}

# ---------------------------------------------------------------------------
# REST framework configuration
# ---------------------------------------------------------------------------

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
}

SPECTACULAR_SETTINGS = {
    "TITLE": "Aviation Safety Watch API",
    "DESCRIPTION": "Ingestion and geocoding backend for aviation accident records.",
    "VERSION": "1.0.0",
}

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

CORS_ALLOW_ALL_ORIGINS = os.environ.get("CORS_ALLOW_ALL_ORIGINS", "true").lower() == "true"

# ---------------------------------------------------------------------------
# Geocoding
# ---------------------------------------------------------------------------

GEOCODER_URL = os.environ.get(
    "GEOCODER_URL",
    "https://nominatim.openstreetmap.org/search",
)
GEOCODER_USER_AGENT = os.environ.get(
    "GEOCODER_USER_AGENT",
    "AviationSafetyWatch/2.0 (contact: admin@aviationsafetywatch.com)",
)
# The public Nominatim service allows one request per second.
GEOCODER_MIN_INTERVAL_SEC = float(os.environ.get("GEOCODER_MIN_INTERVAL_SEC", "1.0"))
GEOCODER_TIMEOUT_SEC = float(os.environ.get("GEOCODER_TIMEOUT_SEC", "10"))

# Key-value cache service (REST interface). Leaving either value empty
# disables the durable cache; lookups are then only memoised per run.
GEOCODE_CACHE_URL = os.environ.get("GEOCODE_CACHE_URL", os.environ.get("KV_REST_API_URL", ""))
GEOCODE_CACHE_TOKEN = os.environ.get(
    "GEOCODE_CACHE_TOKEN", os.environ.get("KV_REST_API_TOKEN", "")
)
GEOCODE_CACHE_TIMEOUT_SEC = float(os.environ.get("GEOCODE_CACHE_TIMEOUT_SEC", "5"))

# Curated lookup tables that non-devs can edit without touching Python code.
# Empty means the copies bundled in geocoding/config/.
GEOCODER_COUNTRY_CODES_PATH = os.environ.get("GEOCODER_COUNTRY_CODES_PATH", "")
GEOCODER_ESTIMATES_PATH = os.environ.get("GEOCODER_ESTIMATES_PATH", "")

# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

INGESTION_CASE_API_URL = os.environ.get(
    "INGESTION_CASE_API_URL",
    "https://data.ntsb.gov/carol-main-public/api/Query/Main",
)
INGESTION_FEED_URL = os.environ.get(
    "INGESTION_FEED_URL",
    "https://www.ntsb.gov/_layouts/ntsb.aviation/RSS.aspx",
)
INGESTION_USER_AGENT = os.environ.get("INGESTION_USER_AGENT", "AviationSafetyWatch/2.0")
INGESTION_PAGE_SIZE = int(os.environ.get("INGESTION_PAGE_SIZE", "500"))
INGESTION_FETCH_TIMEOUT_SEC = float(os.environ.get("INGESTION_FETCH_TIMEOUT_SEC", "15"))
INGESTION_SYNC_LOOKBACK_DAYS = int(os.environ.get("INGESTION_SYNC_LOOKBACK_DAYS", "30"))

# Trigger endpoint authorisation: either the scheduler presents this header
# with the value "true", or the caller sends "Authorization: Bearer <secret>".
INGESTION_SYNC_SECRET = os.environ.get("INGESTION_SYNC_SECRET", os.environ.get("CRON_SECRET", ""))
INGESTION_SCHEDULER_HEADER = os.environ.get("INGESTION_SCHEDULER_HEADER", "X-Scheduler-Cron")

INGESTION_NARRATIVE_MAX_LENGTH = int(os.environ.get("INGESTION_NARRATIVE_MAX_LENGTH", "5000"))
INGESTION_PROBABLE_CAUSE_MAX_LENGTH = int(
    os.environ.get("INGESTION_PROBABLE_CAUSE_MAX_LENGTH", "2000")
)

# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------

SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

SESSION_COOKIE_SECURE = not DEBUG
CSRF_COOKIE_SECURE = not DEBUG
SECURE_SSL_REDIRECT = os.environ.get("DJANGO_SECURE_SSL_REDIRECT", "false").lower() == "true"

SECURE_HSTS_SECONDS = int(os.environ.get("DJANGO_SECURE_HSTS_SECONDS", "0"))
SECURE_HSTS_INCLUDE_SUBDOMAINS = os.environ.get(
    "DJANGO_SECURE_HSTS_INCLUDE_SUBDOMAINS", "false"
).lower() == "true"
SECURE_HSTS_PRELOAD = os.environ.get("DJANGO_SECURE_HSTS_PRELOAD", "false").lower() == "true"
