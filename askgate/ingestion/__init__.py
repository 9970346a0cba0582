"""Offline ingestion jobs that populate tenant datastores with embedded products.

See ingest_products.py for the JSON product catalogue loader.
"""
