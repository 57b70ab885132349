"""Checkout, plan catalogue and webhook reconciliation."""
