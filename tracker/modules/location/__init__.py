"""Location ingestion, geofencing and alerts service."""
