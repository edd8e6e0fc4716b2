"""
Django settings for the ISP reseller billing console
"""

from pathlib import Path
from decouple import config, Csv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config(
    "SECRET_KEY", default="django-insecure-ispconsole-dev-key-change-in-production"
)

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config(
    "ALLOWED_HOSTS",
    default="localhost,127.0.0.1,testserver",
    cast=Csv(),
)

# Application definition
INSTALLED_APPS = [
    "jazzmin",
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "corsheaders",
    "django_crontab",  # For scheduled sweeps
    "billing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    # Resolves request.tenant from the X-API-Key header
    "billing.middleware.TenantMiddleware",
]

ROOT_URLCONF = "ispconsole.urls"

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

WSGI_APPLICATION = "ispconsole.wsgi.application"

# Database
# SQLite for development and tests, MySQL in production (DB_ENGINE=mysql)
DB_ENGINE = config("DB_ENGINE", default="sqlite")

if DB_ENGINE == "mysql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.mysql",
            "NAME": config("DB_NAME", default="ispconsole"),
            "USER": config("DB_USER", default="root"),
            "PASSWORD": config("DB_PASSWORD", default=""),
            "HOST": config("DB_HOST", default="localhost"),
            "PORT": config("DB_PORT", default="3306"),
            "OPTIONS": {
                "charset": "utf8mb4",
                "init_command": "SET sql_mode='STRICT_TRANS_TABLES'",
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": config("DB_NAME", default=str(BASE_DIR / "db.sqlite3")),
            # Writers queue for the lock instead of failing with "database is locked"
            "OPTIONS": {
                "transaction_mode": "IMMEDIATE",
                "timeout": config("DB_LOCK_TIMEOUT", default=20, cast=int),
            },
            # On disk so concurrent settlement tests share one database
            "TEST": {
                "NAME": config("DB_TEST_NAME", default=str(BASE_DIR / "test_db.sqlite3")),
            },
        }
    }


# Password validation
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

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "Africa/Nairobi"
USE_I18N = True
USE_TZ = True

# Static files (CSS, JavaScript, Images)
STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# WhiteNoise serves the admin assets in production
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {
        "BACKEND": (
            "django.contrib.staticfiles.storage.StaticFilesStorage"
            if DEBUG
            else "whitenoise.storage.CompressedStaticFilesStorage"
        )
    },
}

WHITENOISE_USE_FINDERS = DEBUG
WHITENOISE_AUTOREFRESH = DEBUG
WHITENOISE_MAX_AGE = 31536000 if not DEBUG else 0  # 1 year cache in production

# Security Settings - Environment Aware Configuration
if not DEBUG:
    SECURE_CONTENT_TYPE_NOSNIFF = True
    SECURE_HSTS_INCLUDE_SUBDOMAINS = True
    SECURE_HSTS_SECONDS = config("SECURE_HSTS_SECONDS", default=31536000, cast=int)
    # TLS usually terminates at the reverse proxy
    SECURE_SSL_REDIRECT = config("SECURE_SSL_REDIRECT", default=False, cast=bool)
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
    SESSION_COOKIE_SECURE = True
    CSRF_COOKIE_SECURE = True
    X_FRAME_OPTIONS = "DENY"
    SECURE_REFERRER_POLICY = "same-origin"
else:
    SECURE_SSL_REDIRECT = False
    SESSION_COOKIE_SECURE = False
    CSRF_COOKIE_SECURE = False
    X_FRAME_OPTIONS = "SAMEORIGIN"

# Logging
LOG_DIR = BASE_DIR / "logs"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
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
        "level": "INFO" if DEBUG else "WARNING",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "billing": {
            "handlers": ["console"],
            "level": config("BILLING_LOG_LEVEL", default="INFO"),
            "propagate": False,
        },
    },
}

# File logging outside development
if not DEBUG and config("LOG_TO_FILE", default=True, cast=bool):
    LOG_DIR.mkdir(exist_ok=True)
    LOGGING["handlers"]["file"] = {
        "class": "logging.handlers.RotatingFileHandler",
        "filename": LOG_DIR / "ispconsole.log",
        "maxBytes": 10 * 1024 * 1024,
        "backupCount": 5,
        "formatter": "verbose",
    }
    LOGGING["loggers"]["django"]["handlers"].append("file")
    LOGGING["loggers"]["billing"]["handlers"].append("file")

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# REST Framework Configuration
REST_FRAMEWORK = {
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.AllowAny",
    ],
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
        "rest_framework.parsers.FormParser",
    ],
    "EXCEPTION_HANDLER": "billing.exception_handler.custom_exception_handler",
}

# CORS settings - Environment Aware
if DEBUG:
    CORS_ALLOW_ALL_ORIGINS = True
    CORS_ALLOWED_ORIGINS = []
else:
    CORS_ALLOW_ALL_ORIGINS = False
    CORS_ALLOWED_ORIGINS = config(
        "CORS_ALLOWED_ORIGINS",
        default="http://localhost:3000",
        cast=Csv(),
    )

CORS_PREFLIGHT_MAX_AGE = 86400  # 24 hours
CORS_ALLOW_CREDENTIALS = True

CSRF_TRUSTED_ORIGINS = config(
    "CSRF_TRUSTED_ORIGINS",
    default="http://localhost:8000,http://127.0.0.1:8000,http://localhost:3000",
    cast=Csv(),
)

CORS_ALLOW_HEADERS = [
    "accept",
    "accept-encoding",
    "authorization",
    "content-type",
    "origin",
    "user-agent",
    "x-csrftoken",
    "x-api-key",
    "x-requested-with",
]

CORS_ALLOW_METHODS = [
    "DELETE",
    "GET",
    "OPTIONS",
    "PATCH",
    "POST",
    "PUT",
]

# ============================================
# ROUTER GATEWAY
# ============================================
# Credentials are per router (Router model); only transport knobs live here
ROUTER_REQUEST_TIMEOUT = config("ROUTER_REQUEST_TIMEOUT", default=30, cast=int)
ROUTER_VERIFY_SSL = config("ROUTER_VERIFY_SSL", default=False, cast=bool)
ROUTER_DEFAULT_HOTSPOT_SERVER = config(
    "ROUTER_DEFAULT_HOTSPOT_SERVER", default="hotspot1"
)
ROUTER_DEFAULT_PPPOE_SERVER = config(
    "ROUTER_DEFAULT_PPPOE_SERVER", default="pppoe-server1"
)
SERVICE_RESTART_DELAY = config("SERVICE_RESTART_DELAY", default=2, cast=float)

# ============================================
# VOUCHER POOL
# ============================================
VOUCHER_CODE_LENGTH = config("VOUCHER_CODE_LENGTH", default=8, cast=int)
VOUCHER_DEFAULT_EXPIRY_DAYS = config("VOUCHER_DEFAULT_EXPIRY_DAYS", default=30, cast=int)
VOUCHER_MAX_BATCH = config("VOUCHER_MAX_BATCH", default=1000, cast=int)
VOUCHER_SYNC_WORKERS = config("VOUCHER_SYNC_WORKERS", default=4, cast=int)

# ============================================
# SETTLEMENT
# ============================================
# Commission percentages by reseller account type
COMMISSION_RATES = {
    "homeowner": config("COMMISSION_RATE_HOMEOWNER", default=20.0, cast=float),
    "personal": config("COMMISSION_RATE_PERSONAL", default=20.0, cast=float),
    "isp": config("COMMISSION_RATE_ISP", default=0.0, cast=float),
    "enterprise": config("COMMISSION_RATE_ENTERPRISE", default=0.0, cast=float),
}
DEFAULT_COMMISSION_RATE = config("DEFAULT_COMMISSION_RATE", default=20.0, cast=float)
AMOUNT_TOLERANCE = 0.01
# Captive portal stops waiting for an STK push after this long
STK_PAYMENT_TIMEOUT_MINUTES = config("STK_PAYMENT_TIMEOUT_MINUTES", default=10, cast=int)

# ============================================
# NEXTSMS CONFIGURATION
# ============================================
SMS_ENABLED = config("SMS_ENABLED", default=False, cast=bool)
NEXTSMS_USERNAME = config("NEXTSMS_USERNAME", default="")
NEXTSMS_PASSWORD = config("NEXTSMS_PASSWORD", default="")
NEXTSMS_SENDER_ID = config("NEXTSMS_SENDER_ID", default="WIFI")
NEXTSMS_BASE_URL = config("NEXTSMS_BASE_URL", default="https://messaging-service.co.tz")
OPERATOR_ALERT_PHONE = config("OPERATOR_ALERT_PHONE", default="")

# Jazzmin Configuration
JAZZMIN_SETTINGS = {
    "site_title": "ISP Console Admin",
    "site_header": "ISP Console",
    "site_brand": "ISP Console",
    "welcome_sign": "Reseller billing and router reconciliation",
    "copyright": "ISP Console",
    "search_model": [
        "billing.Tenant",
        "billing.Router",
        "billing.Voucher",
        "billing.Payment",
    ],
    "topmenu_links": [
        {"name": "Home", "url": "admin:index", "permissions": ["auth.view_user"]},
        {"app": "billing"},
    ],
    "show_sidebar": True,
    "navigation_expanded": True,
    "order_with_respect_to": ["billing", "auth"],
    "icons": {
        "auth": "fas fa-users-cog",
        "auth.user": "fas fa-user",
        "billing.Tenant": "fas fa-building",
        "billing.Router": "fas fa-network-wired",
        "billing.Package": "fas fa-boxes",
        "billing.Voucher": "fas fa-ticket-alt",
        "billing.Customer": "fas fa-user-friends",
        "billing.Payment": "fas fa-credit-card",
        "billing.PaymentWebhook": "fas fa-plug",
        "billing.ServiceIdentifier": "fas fa-fingerprint",
        "billing.OperatorAlert": "fas fa-bell",
        "billing.SMSLog": "fas fa-sms",
    },
    "changeform_format": "horizontal_tabs",
    "show_ui_builder": False,
}

# ============================================
# CRONTAB CONFIGURATION FOR SCHEDULED TASKS
# ============================================
# Run 'python manage.py crontab add' to install cron jobs
# Run 'python manage.py crontab remove' to uninstall cron jobs

CRONJOBS = [
    # Expire unsold vouchers past their activation deadline and sold ones past
    # their purchase or usage deadline, removing router users as configured
    (
        "*/10 * * * *",
        "billing.tasks.expire_vouchers",
        ">> /var/log/ispconsole_cron.log 2>&1",
    ),
    # Retry the pool claim for payments that arrived while a package was out of stock
    (
        "*/5 * * * *",
        "billing.tasks.fulfil_pending_payments",
        ">> /var/log/ispconsole_cron.log 2>&1",
    ),
]
