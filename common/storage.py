"""
In-memory fallback storage.

Audit records that could not be written to the database are kept here so
they are not lost while the database is unavailable.
"""

audit_logs = []
