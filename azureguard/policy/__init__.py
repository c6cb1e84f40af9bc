"""Policy tables and configuration."""
