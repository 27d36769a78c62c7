"""Self-update pipeline for deployed installations.

Detects new releases, drives the update lifecycle
(health check → backup → pull → install → migrate → build → verify),
and restores the pre-update backup when any stage fails.
"""
