"""Utilities for the PARK session engine."""
