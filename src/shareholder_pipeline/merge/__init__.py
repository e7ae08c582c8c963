"""Staging and merge of normalized rows into the canonical collections.

Rows are first written to an owner-scoped staging collection, then merged
idempotently into companies, entities and holdings.
"""
