"""Cleaning utilities for the pipeline.

Provides header alias resolution and value normalization that turn raw
registry rows into validated `ShareholderRow` records or rejections.
"""
