"""Consultation booking and payment reconciliation service."""
