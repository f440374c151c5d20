"""Application services: epoch, normalization, ingestion, migration and history."""
