"""Form detection, field mapping, templates and submission verification."""
