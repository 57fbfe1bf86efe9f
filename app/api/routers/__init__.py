"""
FastAPI routers for the import service.
"""
