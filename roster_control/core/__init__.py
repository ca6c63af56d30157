"""Cross-cutting infrastructure: config, logging, audit, cache, notifications."""
