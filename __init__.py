"""catalog_jobs: asynchronous bulk-job execution engine for the catalog backend."""

__version__ = "1.0.0"
