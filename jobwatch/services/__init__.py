"""Monitoring services: session, subscription, scheduler and controller."""
