"""Environment lifecycle management.

Tracks named package environments, drives the package manager to create,
update and remove them, and serializes concurrent operations per name."""
