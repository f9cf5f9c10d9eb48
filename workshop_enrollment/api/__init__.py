"""HTTP surface of the enrollment service."""
