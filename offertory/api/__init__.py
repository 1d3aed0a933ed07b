"""HTTP surface and error types."""
