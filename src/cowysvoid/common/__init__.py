"""Shared configuration, observability and networking helpers."""
