"""Funnel identity-stitching backend."""
