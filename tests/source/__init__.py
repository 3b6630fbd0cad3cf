"""Tests for desired state sources."""
