"""Prometheus metrics for ingestion and migration.

Every skipped, dropped or anomalous event is counted here as well as in the
per-run ``IngestionStats``, so nothing is discarded without a trace.
"""

from prometheus_client import Counter, start_http_server

from gateway_etl.utils.logging import get_logger

logger = get_logger(__name__)

# ============================================================================
# Metric Definitions
# ============================================================================

records_written_total = Counter(
    "gateway_etl_records_written_total",
    "Payment records handed to the writer",
    ["shape", "outcome"],  # labels: table name, inserted/already_present
)

events_skipped_total = Counter(
    "gateway_etl_events_skipped_total",
    "Events not persisted",
    ["reason"],  # labels: unknown_kind/missing_field/invalid_field/storage_failed
)

timestamp_anomalies_total = Counter(
    "gateway_etl_timestamp_anomalies_total",
    "Events whose timestamp went backwards within a federation stream",
    ["federation_id"],
)

duplicate_mismatches_total = Counter(
    "gateway_etl_duplicate_mismatches_total",
    "Redelivered events whose content differs from the stored row",
    ["shape"],
)

migrated_records_total = Counter(
    "gateway_etl_migrated_records_total",
    "v1 rows copied into the v2 tables",
    ["source_shape"],
)

migration_field_gaps_total = Counter(
    "gateway_etl_migration_field_gaps_total",
    "v2 fields left empty because no v1 value could be recovered",
    ["target_shape", "field"],
)


# ============================================================================
# Metrics Server
# ============================================================================


def start_metrics_server(port: int = 9108) -> None:
    """Start Prometheus metrics HTTP server.

    Args:
        port: Port to expose metrics on
    """
    try:
        start_http_server(port)
        logger.info("metrics_server_started", port=port)
    except OSError as e:
        logger.warning("metrics_server_unavailable", port=port, error=str(e))
