"""Host capability introspection."""
