"""Subscription billing service for the coaching marketplace."""
