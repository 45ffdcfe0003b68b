"""
API routers package.
Each module handles a specific domain of endpoints.
"""
