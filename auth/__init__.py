"""auth/ -- Authentication and session package for the marketplace.

Layer rule: auth/ imports stdlib, third-party libraries, and core/ only.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
