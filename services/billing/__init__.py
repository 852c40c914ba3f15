"""Subscription lifecycle and usage metering."""
