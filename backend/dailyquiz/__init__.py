"""Application package for the daily quiz backend.

This package exposes the eligibility engine, quiz session state machine,
storage gateway and service modules used by the FastAPI application.
Individual modules contain the concrete implementations and documentation.
"""
