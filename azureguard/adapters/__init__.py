"""Input adapters producing Resource records."""
