"""HTTP surface — FastAPI app and routes."""
