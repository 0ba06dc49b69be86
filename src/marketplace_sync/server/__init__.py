"""Server module - FastAPI application and routes."""
