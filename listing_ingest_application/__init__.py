"""Listing snapshot ingestion: Bright Data discovery and detail snapshots orchestrated on Temporal."""
