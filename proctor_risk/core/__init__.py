"""Scoring, fusion, identity and evidence pipeline."""
