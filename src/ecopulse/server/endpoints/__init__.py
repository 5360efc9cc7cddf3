"""REST endpoint handlers grouped by resource."""
