"""Shared utilities for deploy-runner services: base settings and logging."""
