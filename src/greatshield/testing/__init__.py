"""In-memory collaborators for tests and dry runs."""
