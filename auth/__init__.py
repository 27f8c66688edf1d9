"""auth/ -- Owner accounts and the sign-in flow for Zorem.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/, rooms/, or media/.
api/ imports from auth/, not the other way around.
"""
