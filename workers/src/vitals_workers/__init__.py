"""Vitals workers: wearable webhook ingestion, normalization, and confidence scoring."""
