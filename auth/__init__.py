"""auth/ -- Identity, session gate, and access policy for the console.

Layer rule: auth/ imports from core/ and cache/ plus third-party libraries.
It does NOT import from api/, web/, or accounts/. The one exception toward
audit/ is auth/dependencies.py, which builds the audit Actor for routes.
api/ and web/ import from auth/, not the other way around.
"""
