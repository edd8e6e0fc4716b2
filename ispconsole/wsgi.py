"""
WSGI config for the ISP console project
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "ispconsole.settings")

application = get_wsgi_application()
