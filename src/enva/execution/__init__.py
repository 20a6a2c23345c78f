"""Command execution inside managed environments."""
