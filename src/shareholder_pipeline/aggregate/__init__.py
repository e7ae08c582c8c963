"""Aggregations over merged holdings.

Currently the per-company share totals, recomputed in full after a job's
batches have merged.
"""
