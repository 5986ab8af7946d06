"""
Backup package for the SQLite-backed service.

This package exports consistent snapshots of the live database and stores
them either on the local filesystem or in S3-compatible object storage, so
a lost host can be rebuilt from the most recent backup.
"""
