"""HTTP API for the training centre."""
