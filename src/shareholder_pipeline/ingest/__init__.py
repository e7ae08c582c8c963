"""Source access and parsing for registry imports.

Provides blob-store adapters that fetch uploaded files and the chunked /
streaming readers that turn them into raw header → cell rows.
"""
