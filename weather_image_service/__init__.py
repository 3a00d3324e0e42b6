"""
Weather image job service package.

Exposes the building blocks for submitting fan-out jobs, dispatching them
into per-station work items, compositing weather labels onto images and
aggregating progress, plus the FastAPI application and queue consumers.
"""
