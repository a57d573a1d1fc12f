"""Kernel services: sequencing, tenants, invoice submission, retry and attempt history."""
