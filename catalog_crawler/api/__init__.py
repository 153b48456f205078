"""HTTP API for the catalog crawler."""
