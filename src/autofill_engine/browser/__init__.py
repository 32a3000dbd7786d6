"""Browser driver capability and resource pool."""
