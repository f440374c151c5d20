"""Gateway payment event ingestion: domain, application services and adapters."""
