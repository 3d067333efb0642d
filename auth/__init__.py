"""auth/ -- Authentication package for tokenward.

Refresh-token rotation with reuse detection, passwordless sign-in, password
sign-in, and the stores behind them. auth/services.py wires it together.

Layer rule: auth/ imports stdlib, third-party libraries, core/ (settings),
and the error type of cache/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
