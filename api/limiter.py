"""
api/limiter.py -- The one slowapi Limiter shared by the JSON API and the web routes.

slowapi counts each decorated endpoint separately unless the limit is shared.
The credential-guessing surfaces therefore use shared limits, keyed per client
IP within a named scope:

  login_limit         POST /api/v1/auth/login and POST /login draw from one
                      budget, so alternating between them gains nothing.
  verify_limit        GET and POST /verify (one-time code checks).
  code_request_limit  POST /signup and POST /forgot-password (code sends).

Apply them BELOW the @router decorator: SlowAPIMiddleware skips endpoints the
decorator has registered, so the endpoint FastAPI stores must be the wrapper.

RATE_LIMIT_STORAGE selects the counter backend. The in-process "memory://"
default is fine for a single worker; multi-worker deployments point it at a
shared store (e.g. redis://) so every worker sees the same counts.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage)

login_limit = limiter.shared_limit(get_settings().login_rate_limit, scope="login")
verify_limit = limiter.shared_limit(get_settings().verify_rate_limit, scope="verify")
code_request_limit = limiter.shared_limit(get_settings().verify_rate_limit, scope="code-request")
