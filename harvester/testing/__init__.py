"""Test doubles for running the harvester without a real browser."""
