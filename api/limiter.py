"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware), the import route in
api/routes/v1/accounts.py and the sign-in routes in web/routes.py. All of
them must share this one instance so they count against the same in-memory
store.

LOGIN_LIMIT comes from Settings.login_rate_limit (default "10/minute").
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

LOGIN_LIMIT = get_settings().login_rate_limit
IMPORT_LIMIT = "10/minute"
