"""
Background removal microservice package.

Exposes the pipeline pieces (normalization, quota accounting, remote client,
local segmentation fallback) and the FastAPI application that serves them.
"""
