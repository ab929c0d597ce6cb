"""Transports: HTTP (FastAPI) and AWS Lambda."""
