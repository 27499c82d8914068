"""HTTP surface of the bulk-job engine."""
