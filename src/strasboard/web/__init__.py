"""HTTP boundary: FastAPI app and routes"""
