"""Persistence helpers shared by queue and result-record repositories."""
