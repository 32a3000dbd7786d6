"""Session scheduling, job execution and retry."""
