"""Cross-cutting infrastructure: errors, structured logging, clock."""
