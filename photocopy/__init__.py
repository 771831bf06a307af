"""Turn AT Protocol records, PLC directory operations and repository backfills into batched table rows."""

__version__ = "0.1.0"