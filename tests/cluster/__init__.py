"""Tests for cluster clients."""
