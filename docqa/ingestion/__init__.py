"""Ingestion package: document and email ingestion pipeline plus offline CLI.

See pipeline.py for chunk/embed/store and ingest_files.py for the text-file loader.
"""
