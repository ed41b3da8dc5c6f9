"""Cloud Adapter: one normalising module per provider service."""
