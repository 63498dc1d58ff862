"""
WSGI config for powershub project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'powershub.settings')

application = get_wsgi_application()
