"""Pulse REST API.

Usage:
    uvicorn --factory pulse.api.main:build_app
"""
