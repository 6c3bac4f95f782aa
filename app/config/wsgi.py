"""
WSGI config for the charge recovery service.

Exposes the WSGI callable as a module-level variable named `application`.
Only the health check and admin are served over HTTP; the recovery engine
itself runs in Celery workers.

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/howto/deployment/wsgi/
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
