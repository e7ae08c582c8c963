"""shareholder_pipeline package.

Contains modules for reading shareholder-registry exports (delimited text or
spreadsheets), normalizing heterogeneous column layouts, staging and merging
rows into canonical company/entity/holding collections in MongoDB, and
driving resumable import jobs.

Architecture:
- Source → Normalized rows → Staging → Canonical collections → Totals
- Jobs are driven chunk by chunk (caller-iterated or self-driving) or as a
  backpressured stream
- Pydantic models validate normalized rows and job records
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
