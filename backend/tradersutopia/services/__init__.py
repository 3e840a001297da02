"""
Billing services: event ingest, reconciliation, notifications.
"""
