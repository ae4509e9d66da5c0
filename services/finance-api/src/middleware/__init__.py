"""HTTP middleware for the finance API."""
