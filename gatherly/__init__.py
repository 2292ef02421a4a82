"""Gatherly community events service."""
