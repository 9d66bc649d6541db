"""Remote storage folders for backups.

This package provides:
- A uniform `Folder` interface over S3, GCS and SFTP destinations
- Jittered exponential backoff and a cancellable retry driver
- Chunked uploads (sequential writer or compose-from-parts)
- Settings parsing and a prefix-based folder factory
"""
