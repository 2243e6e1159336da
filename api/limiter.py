"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the per-IP brake on credential endpoints. The per-email OTP issuance
limit is a different mechanism (OtpService.check_rate_limit) because it has
to hold across clients and processes, so it lives in the database.

A single shared instance keeps one counter store for every route; tests call
limiter.reset() between cases.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

# Limit string for credential-bearing endpoints, e.g. "10/minute".
CREDENTIAL_LIMIT = get_settings().login_rate_limit
