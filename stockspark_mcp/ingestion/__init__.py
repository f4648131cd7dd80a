"""Batch image ingestion for vehicle galleries."""
