"""Durable job queue: store, executor, scheduler and inspection API."""
