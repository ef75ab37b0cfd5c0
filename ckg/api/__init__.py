"""
API Module

FastAPI routers for the query, update and dependency-analysis contracts
plus health endpoints.
"""
