"""rooms/ -- Room lifecycle and anonymous viewer sessions.

Layer rule: rooms/ imports from core/ only. It does NOT import from api/,
auth/, or media/. Owners are referenced by opaque user id strings.
"""
