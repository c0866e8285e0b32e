"""Tests for the group-call coordinator."""
