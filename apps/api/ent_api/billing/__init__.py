"""Billing: webhook ingestion, classification, reconciliation, entitlements, resync."""
