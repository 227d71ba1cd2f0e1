"""HTTP API for relations, health and pipeline status."""
