"""Shared utilities for sinktrace."""
