"""Aggregation and report layout engines."""
