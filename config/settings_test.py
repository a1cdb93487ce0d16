from .settings import *

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

STORAGES = {
    'default': {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
    },
    'staticfiles': {
        'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage',
    },
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

STRIPE_SECRET_KEY = 'sk_test_fake_key_for_testing'
STRIPE_WEBHOOK_SECRET = 'whsec_fake_secret_for_testing'
PAYMENTS_ENABLED = True
HOLD_SWEEP_SECRET = 'test-sweep-secret'
BOOKING_OPERATOR_EMAIL = 'operator@example.com'
BOOKING_REQUIRE_EMAIL_VERIFICATION = True

GOOGLE_CALENDAR_CLIENT_ID = ''
GOOGLE_CALENDAR_CLIENT_SECRET = ''
GOOGLE_CALENDAR_REFRESH_TOKEN = ''
