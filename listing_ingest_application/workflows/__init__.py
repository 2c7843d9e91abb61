"""Temporal workflows, activities and worker entrypoints for listing ingestion.

Two workflows are defined:
- DiscoveryCollection submits one Bright Data discovery snapshot (location
  filters), waits for it to finish and stores the discovered records.
- DetailEnrichment fetches detail snapshots for records that lack them, in
  bounded batches, and marks each record enriched once all of its writes land.
"""
