"""
Minimal Django settings for Sphinx documentation generation.

Enough for autodoc to import ldapauth without a real Django project.
"""

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = "django-insecure-docs-only-key-for-sphinx"  # noqa: S105

DEBUG = True

INSTALLED_APPS: list[str] = []

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

LDAP_AUTH_PROVIDERS = {
    "default": {
        "uri": "ldap://localhost",
        "base": "ou=people,dc=example,dc=com",
        "bind": {
            "dn": "cn=admin,dc=example,dc=com",
            "password": "password",
        },
    }
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": True,
    "handlers": {
        "null": {
            "class": "logging.NullHandler",
        },
    },
    "root": {
        "handlers": ["null"],
    },
}
