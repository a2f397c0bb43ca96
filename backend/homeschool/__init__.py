"""Application package for the homeschool exams backend.

This package exposes the service, repository and model modules used by
the FastAPI application. Route handlers live in `routers/`; individual
modules contain the concrete implementations and documentation.
"""
