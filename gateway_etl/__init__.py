"""Gateway ETL - ingestion and persistence of Lightning gateway payment events."""

__version__ = "0.3.0"
