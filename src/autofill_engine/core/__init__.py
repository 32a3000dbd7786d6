"""Core data model, error taxonomy and profile access."""
