"""Settings schema and YAML loading."""
