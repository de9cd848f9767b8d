"""Webhook adapters for the funnel backend.

Turns Calendly, Stripe, opt-in and pre-normalized payloads into identity
events and runs them through the stitching pipeline.
"""
