"""Application package for the EthioAce learning backend.

This package exposes the service, repository and model modules used by
the FastAPI application (`ethioace.main:app`). Individual modules contain
the concrete implementations and documentation.
"""
