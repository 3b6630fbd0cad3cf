"""Tests for the release store."""
