"""media/ -- Presigned object-storage access for story uploads and downloads.

Layer rule: media/ imports from core/ and rooms/. It does NOT import from api/
or auth/. Who is asking (owner or viewer) is decided by the caller.
"""
