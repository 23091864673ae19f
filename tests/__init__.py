"""Tests for the progress aggregation workers."""
