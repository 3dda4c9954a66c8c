"""Billing-run services: analyzer, factories, processor."""
