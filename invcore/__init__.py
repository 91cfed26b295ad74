"""Persistence layer for the multi-tenant inventory service."""
