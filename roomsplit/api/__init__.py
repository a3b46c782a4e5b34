"""HTTP surface of the billing engine."""
