"""Inbox domain services: ingestion, threading, delivery and channel auth."""
