"""
FastAPI backend for the catalog pipeline.

Provides REST API endpoints for:
- Starting, stopping, and monitoring pipeline runs
- Streaming pipeline progress
"""
