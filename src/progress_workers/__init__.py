"""Exercise progress aggregation: incremental maintenance and reconciliation."""
